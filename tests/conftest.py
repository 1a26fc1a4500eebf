from __future__ import annotations

from collections.abc import Iterator
import logging

import pytest


@pytest.fixture(autouse=True)
def restore_relbot_logger_state(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    # Tests assert on stderr output, which changes when run inside an Actions job.
    monkeypatch.delenv("GITHUB_ACTIONS", raising=False)
    logger = logging.getLogger("relbot")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    try:
        yield
    finally:
        for handler in logger.handlers:
            if handler not in original_handlers:
                handler.close()
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)
        logger.propagate = original_propagate
