from __future__ import annotations

import json
from pathlib import Path

import pytest

from relbot.models import CommentTrigger, PushTrigger
from relbot.triggers import (
    TriggerError,
    load_event_payload,
    parse_comment_event,
    parse_push_event,
)


class FakeFiles:
    def __init__(self, files: tuple[str, ...]) -> None:
        self.files = files
        self.requested: list[str] = []

    def list_commit_files(self, sha: str) -> tuple[str, ...]:
        self.requested.append(sha)
        return self.files


def test_parse_push_event_collects_paths_from_commits() -> None:
    payload: dict[str, object] = {
        "ref": "refs/heads/main",
        "after": "abc",
        "commits": [
            {"added": ["core/a.ts"], "modified": ["docs/readme.md"], "removed": []},
            {"added": [], "modified": ["core/a.ts"], "removed": ["grid/old.ts"]},
        ],
    }
    files = FakeFiles(("unused",))

    trigger = parse_push_event(payload, files_source=files)

    assert trigger == PushTrigger(
        branch="main",
        head_sha="abc",
        changed_paths=frozenset({"core/a.ts", "docs/readme.md", "grid/old.ts"}),
    )
    assert files.requested == []


def test_parse_push_event_falls_back_to_head_commit_files() -> None:
    files = FakeFiles(("core/a.ts", "core/b.ts"))

    trigger = parse_push_event(
        {"ref": "refs/heads/release/1.x", "after": "abc", "commits": [{"id": "abc"}]},
        files_source=files,
    )

    assert trigger is not None
    assert trigger.branch == "release/1.x"
    assert trigger.changed_paths == frozenset({"core/a.ts", "core/b.ts"})
    assert files.requested == ["abc"]


def test_parse_push_event_without_fallback_raises() -> None:
    with pytest.raises(TriggerError, match="no changed files"):
        parse_push_event({"ref": "refs/heads/main", "after": "abc", "commits": []})


@pytest.mark.parametrize(
    "payload",
    [
        {"ref": "refs/tags/core@v1.0.0", "after": "abc"},
        {"ref": "refs/heads/main", "after": "abc", "deleted": True},
        {"ref": "refs/heads/main", "after": "0" * 40},
    ],
)
def test_parse_push_event_ignores_tags_and_deletions(payload: dict[str, object]) -> None:
    assert parse_push_event(payload, files_source=FakeFiles(())) is None


def test_parse_push_event_requires_ref() -> None:
    with pytest.raises(TriggerError, match="'ref'"):
        parse_push_event({"after": "abc"})


def test_parse_comment_event() -> None:
    payload: dict[str, object] = {
        "action": "created",
        "comment": {"node_id": "IC_1", "body": "@relbot rebase", "user": {"login": "Alice"}},
        "issue": {"number": 7, "body": "[//]: # (relbot-project:core)"},
    }

    assert parse_comment_event(payload) == CommentTrigger(
        comment_id="IC_1",
        body="@relbot rebase",
        author_login="alice",
        issue_number=7,
        issue_body="[//]: # (relbot-project:core)",
    )


def test_parse_comment_event_tolerates_empty_issue_body() -> None:
    trigger = parse_comment_event(
        {
            "action": "created",
            "comment": {"node_id": "IC_1", "body": None, "user": {"login": "bob"}},
            "issue": {"number": 7, "body": None},
        }
    )

    assert trigger is not None
    assert trigger.body == ""
    assert trigger.issue_body == ""


def test_parse_comment_event_ignores_edits() -> None:
    assert parse_comment_event({"action": "edited"}) is None


def test_parse_comment_event_validates_issue_number() -> None:
    with pytest.raises(TriggerError, match="issue.number"):
        parse_comment_event(
            {
                "action": "created",
                "comment": {"node_id": "IC_1", "body": "x", "user": {"login": "bob"}},
                "issue": {"number": "7"},
            }
        )


def test_load_event_payload(tmp_path: Path) -> None:
    good = tmp_path / "event.json"
    good.write_text(json.dumps({"ref": "refs/heads/main"}), encoding="utf-8")
    bad = tmp_path / "bad.json"
    bad.write_text("{", encoding="utf-8")
    not_object = tmp_path / "list.json"
    not_object.write_text("[]", encoding="utf-8")

    assert load_event_payload(good) == {"ref": "refs/heads/main"}
    with pytest.raises(TriggerError, match="not valid JSON"):
        load_event_payload(bad)
    with pytest.raises(TriggerError, match="must be an object"):
        load_event_payload(not_object)
