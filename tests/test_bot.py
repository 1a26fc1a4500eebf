from __future__ import annotations

from dataclasses import replace

import pytest

from relbot.bot import ReleaseBot
from relbot.config import AppConfig, BotConfig, ProjectConfig, RepoConfig
from relbot.errors import PreconditionConflict
from relbot.models import CommentTrigger, PushTrigger
from relbot.observability import configure_logging


def _config(**bot_overrides: object) -> AppConfig:
    return AppConfig(
        repo=RepoConfig(owner="acme", name="widgets", tracked_branches=("main", "next")),
        bot=replace(BotConfig(), **bot_overrides),
        projects=(
            ProjectConfig(project_id="core", paths=("core/*",), manifest_path="core/package.json"),
            ProjectConfig(project_id="grid", paths=("grid/*",), manifest_path="grid/package.json"),
        ),
    )


class FakeReconciler:
    def __init__(self, *, failing: frozenset[str] = frozenset()) -> None:
        self.failing = failing
        self.pushes: list[tuple[str, str]] = []
        self.comments: list[tuple[str, str]] = []

    def reconcile_push(self, project: ProjectConfig, trigger: PushTrigger) -> tuple[str, ...]:
        self.pushes.append((project.project_id, trigger.branch))
        if project.project_id in self.failing:
            raise PreconditionConflict(f"{project.project_id} moved")
        return ("create_branch", "open_pull_request")

    def apply_comment(self, project: ProjectConfig, trigger: CommentTrigger) -> tuple[str, ...]:
        self.comments.append((project.project_id, trigger.body))
        if project.project_id in self.failing:
            raise PreconditionConflict(f"{project.project_id} moved")
        return ("react", "rebase")


def _bot(config: AppConfig, reconciler: FakeReconciler) -> ReleaseBot:
    return ReleaseBot(config, reconciler=reconciler)  # type: ignore[arg-type]


def _push(paths: set[str], *, branch: str = "main") -> PushTrigger:
    return PushTrigger(branch=branch, head_sha="abc", changed_paths=frozenset(paths))


def _comment(body: str, *, author: str = "alice", project: str = "core") -> CommentTrigger:
    return CommentTrigger(
        comment_id="IC_1",
        body=body,
        author_login=author,
        issue_number=11,
        issue_body=f"intro\n[//]: # (relbot-project:{project})\n",
    )


def test_push_processes_relevant_projects_in_config_order() -> None:
    reconciler = FakeReconciler()

    report = _bot(_config(), reconciler).handle_push(_push({"grid/x.ts", "docs/a.md", "core/y.ts"}))

    assert reconciler.pushes == [("core", "main"), ("grid", "main")]
    assert report.event == "push"
    assert report.ok is True
    assert [outcome.project for outcome in report.outcomes] == ["core", "grid"]
    assert report.outcomes[0].transitions == ("create_branch", "open_pull_request")


def test_push_failure_is_isolated_per_project(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose="low")
    reconciler = FakeReconciler(failing=frozenset({"core"}))

    report = _bot(_config(), reconciler).handle_push(_push({"grid/x.ts", "core/y.ts"}))

    assert reconciler.pushes == [("core", "main"), ("grid", "main")]
    assert report.ok is False
    assert [outcome.status for outcome in report.outcomes] == ["failed", "succeeded"]
    assert report.failed[0].detail == "PreconditionConflict: core moved"
    err = capsys.readouterr().err
    assert "event=project_failed" in err
    assert "error_type=PreconditionConflict" in err
    assert "event=run_completed" in err
    assert "failed_count=1" in err


def test_push_to_untracked_branch_is_ignored() -> None:
    reconciler = FakeReconciler()

    report = _bot(_config(), reconciler).handle_push(_push({"core/y.ts"}, branch="feature"))

    assert reconciler.pushes == []
    assert report.outcomes == ()
    assert report.ok is True


def test_push_without_relevant_paths_does_nothing() -> None:
    reconciler = FakeReconciler()

    report = _bot(_config(), reconciler).handle_push(_push({"docs/a.md"}, branch="next"))

    assert reconciler.pushes == []
    assert report.outcomes == ()


def test_comment_command_runs_for_marked_project() -> None:
    reconciler = FakeReconciler()

    report = _bot(_config(), reconciler).handle_comment(_comment("@relbot rebase", project="grid"))

    assert reconciler.comments == [("grid", "@relbot rebase")]
    assert report.event == "issue_comment"
    assert report.outcomes[0].transitions == ("react", "rebase")


def test_comment_failure_fails_report() -> None:
    reconciler = FakeReconciler(failing=frozenset({"core"}))

    report = _bot(_config(), reconciler).handle_comment(_comment("@relbot rebase"))

    assert report.ok is False


@pytest.mark.parametrize(
    "trigger",
    [
        _comment("nice work"),
        _comment("@relbot rebase", project="unknown"),
        replace(_comment("@relbot rebase"), issue_body="no marker"),
    ],
)
def test_comments_without_actionable_target_are_ignored(trigger: CommentTrigger) -> None:
    reconciler = FakeReconciler()

    report = _bot(_config(), reconciler).handle_comment(trigger)

    assert reconciler.comments == []
    assert report.outcomes == ()


def test_missing_marker_warns(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose="low")

    _bot(_config(), FakeReconciler()).handle_comment(
        replace(_comment("@relbot rebase"), issue_body="no marker")
    )

    err = capsys.readouterr().err
    assert "WARNING" in err
    assert "event=comment_ignored" in err
    assert "reason=no_project_marker" in err


def test_unauthorized_commands_are_skipped() -> None:
    reconciler = FakeReconciler()
    config = _config(command_users=frozenset({"alice"}))

    report = _bot(config, reconciler).handle_comment(_comment("@relbot rebase", author="mallory"))

    assert reconciler.comments == []
    assert report.ok is True
    assert report.outcomes[0].status == "skipped"
    assert report.outcomes[0].detail == "unauthorized"

