from __future__ import annotations

import io
import logging
import sys

import pytest

from relbot import observability
from relbot.observability import (
    configure_logging,
    log_error,
    log_event,
    log_group,
    log_warning,
    running_in_actions,
)


def test_configure_logging_quiet_mode_is_idempotent() -> None:
    configure_logging(verbose=False)
    logger = logging.getLogger("relbot")
    assert logger.propagate is False
    assert logger.level > logging.CRITICAL
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)

    configure_logging(verbose=None)
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)


def test_configure_logging_verbose_mode_writes_to_stderr() -> None:
    configure_logging(verbose=True)
    logger = logging.getLogger("relbot")
    assert logger.level == logging.INFO
    assert len(logger.handlers) == 1
    handler = logger.handlers[0]
    assert isinstance(handler, logging.StreamHandler)
    assert handler.stream is sys.stderr

    configure_logging(verbose="high")
    assert len(logger.handlers) == 1


def test_configure_logging_low_mode_filters_to_high_signal_events(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose="low")
    logger = logging.getLogger("relbot.tests.low")

    logger.info("event=github_read endpoint=draft_release")
    logger.info("event=transition_applied transition=create_branch")
    logger.info("plain_message=ignored")
    logger.info("event=")
    logger.warning("event=comment_ignored reason=unauthorized")
    logger.error("event=command_failed command=git push")

    stderr = capsys.readouterr().err
    assert "event=github_read" not in stderr
    assert "event=transition_applied transition=create_branch" in stderr
    assert "plain_message=ignored" not in stderr
    assert all(not line.endswith("event=") for line in stderr.splitlines())
    assert "event=comment_ignored reason=unauthorized" in stderr
    assert "event=command_failed command=git push" in stderr


def test_configure_logging_rejects_unknown_mode() -> None:
    with pytest.raises(ValueError, match="Unsupported verbose mode"):
        configure_logging(verbose="noisy")


def test_actions_mode_emits_workflow_commands() -> None:
    stream = io.StringIO()
    configure_logging(verbose=True, actions=True, stream=stream)
    logger = logging.getLogger("relbot.tests.actions")

    log_event(logger, "run_completed", failed_count=0)
    log_warning(logger, "comment_ignored", reason="no_project_marker")
    log_error(logger, "project_failed", error="line one\nline two 100%")

    lines = stream.getvalue().splitlines()
    assert lines[0] == "relbot.tests.actions event=run_completed failed_count=0"
    assert lines[1] == "::warning::relbot.tests.actions event=comment_ignored reason=no_project_marker"
    assert lines[2] == (
        '::error::relbot.tests.actions event=project_failed error="line one line two 100%25"'
    )


def test_running_in_actions_reads_environment() -> None:
    assert running_in_actions({"GITHUB_ACTIONS": "true"}) is True
    assert running_in_actions({"GITHUB_ACTIONS": "TRUE "}) is True
    assert running_in_actions({"GITHUB_ACTIONS": "false"}) is False
    assert running_in_actions({}) is False


def test_log_group_is_silent_outside_actions() -> None:
    stream = io.StringIO()
    with log_group("Project core", stream=stream):
        stream.write("body\n")

    assert stream.getvalue() == "body\n"


def test_log_group_wraps_output_in_actions(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GITHUB_ACTIONS", "true")
    stream = io.StringIO()

    with pytest.raises(RuntimeError, match="boom"):
        with log_group("Project core\nsecond", stream=stream):
            stream.write("body\n")
            raise RuntimeError("boom")

    assert stream.getvalue() == "::group::Project core%0Asecond\nbody\n::endgroup::\n"


def test_log_event_formats_and_normalizes_fields() -> None:
    logger = logging.getLogger("relbot.tests.observability")
    logger.handlers.clear()
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    log_event(
        logger,
        "test_event",
        b=2,
        a="multi\nline value",
        none_value=None,
        bool_value=True,
        empty="   ",
        long_text="x" * 121,
        complex_value={"k": "v"},
        eq="a=b",
    )

    message = stream.getvalue().strip()
    assert message.startswith("event=test_event ")
    assert 'a="multi line value"' in message
    assert "b=2" in message
    assert "bool_value=true" in message
    assert "complex_value=<dict>" in message
    assert "empty=<empty>" in message
    assert 'eq="a=b"' in message
    assert f"long_text={'x' * 120}..." in message
    assert "none_value=null" in message
    logger.handlers.clear()


def test_extract_event_name() -> None:
    assert observability._extract_event_name("event=foo a=1") == "foo"
    assert observability._extract_event_name("event=") is None
    assert observability._extract_event_name("foo=bar") is None
