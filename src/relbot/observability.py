from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
import json
import logging
import os
import sys
from typing import Final, Literal, TextIO, cast


_LOGGER_NAME: Final[str] = "relbot"
_MAX_VALUE_LEN: Final[int] = 120
_VERBOSE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s %(message)s"
_ACTIONS_FORMAT: Final[str] = "%(name)s %(message)s"
_LOW_VERBOSITY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "trigger_received",
        "projects_of_relevance",
        "draft_state_observed",
        "transition_applied",
        "command_received",
        "project_failed",
        "project_succeeded",
        "run_completed",
        "github_pr_created",
        "github_commit_created",
        "git_rebase_failed",
        "git_push_failed",
    }
)


VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    actions: bool | None = None,
    stream: TextIO | None = None,
) -> None:
    """Route the ``relbot`` logger to a single handler.

    Under GitHub Actions, warnings and errors are written as workflow commands
    so they show up as annotations on the run.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    logger.handlers.clear()
    mode = _normalize_verbose_mode(verbose)

    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    in_actions = running_in_actions() if actions is None else actions
    if in_actions:
        handler: logging.Handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(_ActionsFormatter(_ACTIONS_FORMAT))
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter(_VERBOSE_FORMAT))
    if mode == "low":
        handler.addFilter(_LowVerbosityFilter())
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def running_in_actions(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return env.get("GITHUB_ACTIONS", "").strip().lower() == "true"


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(_build_event_message(event=event, fields=fields))


def log_warning(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(_build_event_message(event=event, fields=fields))


def log_error(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.error(_build_event_message(event=event, fields=fields))


@contextmanager
def log_group(title: str, *, stream: TextIO | None = None) -> Iterator[None]:
    """Fold everything logged inside the block under ``title`` in the Actions UI."""
    if not running_in_actions():
        yield
        return
    out = stream or sys.stdout
    out.write(f"::group::{_escape_command_data(title)}\n")
    out.flush()
    try:
        yield
    finally:
        out.write("::endgroup::\n")
        out.flush()


def _build_event_message(*, event: str, fields: dict[str, object]) -> str:
    parts = [f"event={_normalize_field_value(event)}"]
    for key in sorted(fields.keys()):
        parts.append(f"{key}={_normalize_field_value(fields[key])}")
    return " ".join(parts)


def _normalize_field_value(value: object) -> str:
    if value is None:
        normalized = "null"
    elif isinstance(value, bool):
        normalized = "true" if value else "false"
    elif isinstance(value, int | float):
        normalized = str(value)
    elif isinstance(value, str):
        collapsed = " ".join(value.split())
        if len(collapsed) > _MAX_VALUE_LEN:
            collapsed = f"{collapsed[:_MAX_VALUE_LEN]}..."
        normalized = collapsed if collapsed else "<empty>"
    else:
        normalized = f"<{type(value).__name__}>"

    if any(ch.isspace() for ch in normalized) or "=" in normalized:
        return json.dumps(normalized)
    return normalized


def _normalize_verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None:
        return None
    if isinstance(verbose, bool):
        return "high" if verbose else None
    normalized = verbose.strip().lower()
    if normalized in {"low", "high"}:
        return cast(VerboseMode, normalized)
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


def _escape_command_data(text: str) -> str:
    # Workflow command payloads must stay on one line.
    return text.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")


def _extract_event_name(message: str) -> str | None:
    if not message.startswith("event="):
        return None
    first_field = message.split(" ", 1)[0]
    if first_field == "event=":
        return None
    return first_field[len("event=") :]


class _ActionsFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        if record.levelno >= logging.ERROR:
            return f"::error::{_escape_command_data(message)}"
        if record.levelno >= logging.WARNING:
            return f"::warning::{_escape_command_data(message)}"
        if record.levelno < logging.INFO:
            return f"::debug::{_escape_command_data(message)}"
        return message


class _LowVerbosityFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        event_name = _extract_event_name(record.getMessage())
        return event_name in _LOW_VERBOSITY_EVENTS
