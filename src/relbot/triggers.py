from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol, cast

from relbot.models import CommentTrigger, PushTrigger
from relbot.observability import log_event


LOGGER = logging.getLogger("relbot.triggers")
_BRANCH_REF_PREFIX = "refs/heads/"
_ZERO_SHA = "0" * 40


class TriggerError(ValueError):
    pass


class CommitFilesSource(Protocol):
    def list_commit_files(self, sha: str) -> tuple[str, ...]: ...


def load_event_payload(path: Path) -> dict[str, object]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise TriggerError(f"Event payload at {path} is not valid JSON: {exc}") from exc
    return _require_object(raw, what="event payload")


def parse_push_event(
    payload: dict[str, object],
    *,
    files_source: CommitFilesSource | None = None,
) -> PushTrigger | None:
    """Build a push trigger, or ``None`` for pushes that never open a release.

    Tag pushes and branch deletions are ignored. When the payload does not
    carry per-commit file lists the head commit's files are fetched instead.
    """
    ref = _require_str(payload, "ref")
    if not ref.startswith(_BRANCH_REF_PREFIX):
        log_event(LOGGER, "trigger_ignored", event="push", reason="not_a_branch", ref=ref)
        return None
    if payload.get("deleted") is True:
        log_event(LOGGER, "trigger_ignored", event="push", reason="branch_deleted", ref=ref)
        return None

    head_sha = _require_str(payload, "after")
    if head_sha == _ZERO_SHA:
        log_event(LOGGER, "trigger_ignored", event="push", reason="branch_deleted", ref=ref)
        return None

    changed = _changed_paths_from_commits(payload.get("commits"))
    if changed is None:
        if files_source is None:
            raise TriggerError("Push payload lists no changed files and no fallback is available")
        changed = frozenset(files_source.list_commit_files(head_sha))

    return PushTrigger(
        branch=ref[len(_BRANCH_REF_PREFIX) :],
        head_sha=head_sha,
        changed_paths=changed,
    )


def parse_comment_event(payload: dict[str, object]) -> CommentTrigger | None:
    action = payload.get("action")
    if action != "created":
        log_event(LOGGER, "trigger_ignored", event="issue_comment", reason=f"action_{action}")
        return None

    comment = _require_object(payload.get("comment"), what="comment")
    issue = _require_object(payload.get("issue"), what="issue")
    user = _require_object(comment.get("user"), what="comment.user")
    number = issue.get("number")
    if isinstance(number, bool) or not isinstance(number, int):
        raise TriggerError("issue.number must be an integer")
    issue_body = issue.get("body")

    return CommentTrigger(
        comment_id=_require_str(comment, "node_id"),
        body=_optional_text(comment.get("body")),
        author_login=_require_str(user, "login").strip().lower(),
        issue_number=number,
        issue_body=_optional_text(issue_body),
    )


def _changed_paths_from_commits(commits: object) -> frozenset[str] | None:
    if not isinstance(commits, list) or not commits:
        return None
    paths: set[str] = set()
    saw_file_list = False
    for commit in commits:
        commit_obj = _as_object_dict(commit)
        if commit_obj is None:
            continue
        for key in ("added", "modified", "removed"):
            value = commit_obj.get(key)
            if not isinstance(value, list):
                continue
            saw_file_list = True
            paths.update(item for item in value if isinstance(item, str) and item)
    if not saw_file_list:
        return None
    return frozenset(paths)


def _optional_text(value: object) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TriggerError("Expected a string in the event payload")
    return value


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise TriggerError(f"Event payload field {key!r} must be a non-empty string")
    return value


def _require_object(value: object, *, what: str) -> dict[str, object]:
    obj = _as_object_dict(value)
    if obj is None:
        raise TriggerError(f"Event payload field {what!r} must be an object")
    return obj


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)
