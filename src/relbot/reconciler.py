from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
import logging
from typing import Protocol

from relbot.commands import CommandDispatcher
from relbot.config import AppConfig, ProjectConfig
from relbot.errors import InvalidCommandError, ManifestNotFound, RebaseConflict, ReleaseBotError
from relbot.manifest import patch_version, read_version
from relbot.models import (
    BranchRef,
    BumpType,
    CommentTrigger,
    DraftPullRequest,
    DraftRelease,
    DraftState,
    InvalidCommandArgument,
    Label,
    PushTrigger,
    Reaction,
    Rebase,
    Recreate,
    SetVersion,
)
from relbot.observability import log_event, log_warning
from relbot.templates import (
    invalid_command_notice,
    pull_request_body,
    pull_request_title,
    rebase_failed_notice,
    stale_notice,
)
from relbot.versions import VersionResolver


LOGGER = logging.getLogger("relbot.reconciler")
_PUSH_BUMP: BumpType = "patch"


class ReleaseGitHub(Protocol):
    def find_draft_release(
        self,
        *,
        project: str,
        branch_name: str,
        release_label: str,
        comment_limit: int = 50,
    ) -> DraftRelease: ...

    def get_file_text(self, *, ref: str, path: str) -> str | None: ...

    def get_branch_head_sha(self, branch: str) -> str: ...

    def create_branch(self, *, repository_id: str, branch: str, sha: str) -> BranchRef: ...

    def force_update_branch(self, *, ref_id: str, branch: str, sha: str) -> BranchRef: ...

    def create_commit_on_branch(
        self,
        *,
        branch: str,
        expected_head_sha: str,
        headline: str,
        additions: dict[str, str],
    ) -> str: ...

    def create_pull_request(
        self,
        *,
        repository_id: str,
        base: str,
        head: str,
        title: str,
        body: str,
        draft: bool = True,
    ) -> tuple[str, int]: ...

    def update_pull_request(
        self,
        pr_id: str,
        *,
        title: str | None = None,
        body: str | None = None,
        label_ids: tuple[str, ...] | None = None,
    ) -> None: ...

    def ensure_label(self, name: str, existing: Label | None) -> Label: ...

    def add_reaction(self, subject_id: str, reaction: Reaction) -> None: ...

    def add_comment(self, subject_id: str, body: str) -> str: ...

    def update_comment(self, comment_id: str, body: str) -> None: ...


class ReleaseGit(Protocol):
    def rebase_release_branch(self, *, branch: str, base: str, expected_head_sha: str) -> str: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReleaseStateReconciler:
    """Drives one project's draft release branch and pull request.

    Nothing is cached between calls: every operation re-reads the draft
    release from GitHub, decides from what it sees, and returns the names of
    the transitions it applied.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        github: ReleaseGitHub,
        git: ReleaseGit,
        dispatcher: CommandDispatcher | None = None,
        resolver: VersionResolver | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config = config
        self._github = github
        self._git = git
        self._dispatcher = dispatcher or CommandDispatcher(config.bot.name)
        self._resolver = resolver or VersionResolver(self._dispatcher)
        self._now = now

    def observe(self, project: ProjectConfig) -> DraftRelease:
        bot = self._config.bot
        draft = self._github.find_draft_release(
            project=project.project_id,
            branch_name=bot.release_branch(project.project_id),
            release_label=bot.release_label,
            comment_limit=bot.comment_history_limit,
        )
        log_event(
            LOGGER,
            "draft_state_observed",
            project=project.project_id,
            state=self.classify_state(draft),
            branch_sha=draft.branch.head_sha if draft.branch else None,
            pr_number=draft.pull_request.number if draft.pull_request else None,
        )
        return draft

    def classify_state(self, draft: DraftRelease) -> DraftState:
        if draft.branch is None:
            return "no_branch_no_pr"
        if draft.pull_request is None:
            return "branch_no_pr"
        if self._is_stale(draft.pull_request):
            return "branch_pr_stale"
        return "branch_pr_fresh"

    def next_version(self, draft: DraftRelease, requested_bump: str = _PUSH_BUMP) -> str:
        comments = draft.pull_request.comments if draft.pull_request else ()
        return self._resolver.next_version(draft.tags, comments, requested_bump)

    def reconcile_push(self, project: ProjectConfig, trigger: PushTrigger) -> tuple[str, ...]:
        draft = self.observe(project)
        version = self.next_version(draft)
        applied: list[str] = []

        if draft.branch is None:
            self._github.create_branch(
                repository_id=draft.repository_id,
                branch=draft.branch_name,
                sha=trigger.head_sha,
            )
            self._applied(project, applied, "create_branch", sha=trigger.head_sha)
            if self._commit_version(
                project,
                branch=draft.branch_name,
                expected_head_sha=trigger.head_sha,
                version=version,
            ):
                self._applied(project, applied, "commit_version", version=version)

        pr = draft.pull_request
        if pr is None:
            self._open_pull_request(project, draft, base=trigger.branch, version=version)
            self._applied(project, applied, "open_pull_request", version=version)
            return tuple(applied)

        if self._missing_labels(project, pr):
            self._github.update_pull_request(pr.pr_id, label_ids=self._ensure_labels(project, draft))
            self._applied(project, applied, "label_pull_request", pr_number=pr.number)

        if self._is_stale(pr):
            self._post_stale_notice(project, pr, applied)
            return tuple(applied)

        self._refresh_pull_request(pr, project=project, version=version)
        self._applied(project, applied, "update_pull_request", version=version)
        if self._config.bot.auto_rebase_on_push and draft.branch is not None:
            self._rebase(project, draft.branch, pr, version=version)
            self._applied(project, applied, "rebase", base=pr.base_branch_name)
        return tuple(applied)

    def apply_comment(self, project: ProjectConfig, trigger: CommentTrigger) -> tuple[str, ...]:
        parsed = self._dispatcher.parse(trigger.body)
        if parsed is None:
            return ()
        log_event(
            LOGGER,
            "command_received",
            project=project.project_id,
            pr_number=trigger.issue_number,
            command=type(parsed).__name__,
            author=trigger.author_login,
        )

        draft = self.observe(project)
        pr = draft.pull_request
        if pr is None or pr.number != trigger.issue_number:
            log_warning(
                LOGGER,
                "command_ignored",
                project=project.project_id,
                pr_number=trigger.issue_number,
                reason="not_the_draft_release",
            )
            return ()

        if isinstance(parsed, InvalidCommandArgument):
            return self.reject_command(project, pr, trigger, parsed)
        if isinstance(parsed, SetVersion):
            return self.set_version(project, draft, trigger, parsed.bump)
        if isinstance(parsed, Rebase):
            return self.rebase(project, draft, trigger)
        if isinstance(parsed, Recreate):
            return self.recreate(project, draft, trigger)
        return ()

    def set_version(
        self,
        project: ProjectConfig,
        draft: DraftRelease,
        trigger: CommentTrigger,
        bump: BumpType,
    ) -> tuple[str, ...]:
        branch, pr = _require_draft(draft)
        applied: list[str] = []
        self._github.add_reaction(trigger.comment_id, "THUMBS_UP")
        self._applied(project, applied, "react", reaction="THUMBS_UP")

        version = self.next_version(draft, bump)
        if self._commit_version(
            project,
            branch=branch.name,
            expected_head_sha=branch.head_sha,
            version=version,
        ):
            self._applied(project, applied, "commit_version", version=version)
        self._refresh_pull_request(pr, project=project, version=version)
        self._applied(project, applied, "update_pull_request", version=version)
        return tuple(applied)

    def rebase(
        self,
        project: ProjectConfig,
        draft: DraftRelease,
        trigger: CommentTrigger,
    ) -> tuple[str, ...]:
        branch, pr = _require_draft(draft)
        applied: list[str] = []
        self._github.add_reaction(trigger.comment_id, "THUMBS_UP")
        self._applied(project, applied, "react", reaction="THUMBS_UP")

        version = self.next_version(draft)
        self._rebase(project, branch, pr, version=version)
        self._applied(project, applied, "rebase", base=pr.base_branch_name)
        return tuple(applied)

    def recreate(
        self,
        project: ProjectConfig,
        draft: DraftRelease,
        trigger: CommentTrigger,
    ) -> tuple[str, ...]:
        pr = _require_pull_request(draft)
        applied: list[str] = []
        self._github.add_reaction(trigger.comment_id, "THUMBS_UP")
        self._applied(project, applied, "react", reaction="THUMBS_UP")

        version = self.next_version(draft)
        base = self._config.repo.default_branch
        tip = self._github.get_branch_head_sha(base)
        if draft.branch is None:
            self._github.create_branch(
                repository_id=draft.repository_id,
                branch=draft.branch_name,
                sha=tip,
            )
            self._applied(project, applied, "create_branch", sha=tip)
        else:
            self._github.force_update_branch(
                ref_id=draft.branch.ref_id,
                branch=draft.branch_name,
                sha=tip,
            )
            self._applied(project, applied, "recreate_branch", base=base, sha=tip)
        if self._commit_version(
            project,
            branch=draft.branch_name,
            expected_head_sha=tip,
            version=version,
        ):
            self._applied(project, applied, "commit_version", version=version)
        self._refresh_pull_request(pr, project=project, version=version)
        self._applied(project, applied, "update_pull_request", version=version)
        return tuple(applied)

    def reject_command(
        self,
        project: ProjectConfig,
        pr: DraftPullRequest,
        trigger: CommentTrigger,
        invalid: InvalidCommandArgument,
    ) -> tuple[str, ...]:
        self._github.add_reaction(trigger.comment_id, "CONFUSED")
        self._github.add_comment(pr.pr_id, invalid_command_notice(invalid.reason))
        log_warning(
            LOGGER,
            "command_rejected",
            project=project.project_id,
            pr_number=pr.number,
            argument=invalid.argument,
            reason=invalid.reason,
        )
        raise InvalidCommandError(f"{invalid.command}: {invalid.reason}")

    def _rebase(
        self,
        project: ProjectConfig,
        branch: BranchRef,
        pr: DraftPullRequest,
        *,
        version: str,
    ) -> None:
        base = pr.base_branch_name or self._config.repo.default_branch
        self._refresh_pull_request(pr, project=project, version=version, rebasing=True)
        try:
            self._git.rebase_release_branch(
                branch=branch.name,
                base=base,
                expected_head_sha=branch.head_sha,
            )
        except RebaseConflict:
            self._github.add_comment(pr.pr_id, rebase_failed_notice())
            raise
        finally:
            self._refresh_pull_request(pr, project=project, version=version)

    def _commit_version(
        self,
        project: ProjectConfig,
        *,
        branch: str,
        expected_head_sha: str,
        version: str,
    ) -> bool:
        text = self._github.get_file_text(ref=expected_head_sha, path=project.manifest_path)
        if text is None:
            raise ManifestNotFound(
                f"{project.manifest_path} does not exist at {expected_head_sha} on {branch}"
            )
        patched = patch_version(text, version)
        if patched == text:
            log_event(
                LOGGER,
                "version_commit_skipped",
                project=project.project_id,
                branch=branch,
                version=version,
                manifest_version=read_version(text),
            )
            return False
        self._github.create_commit_on_branch(
            branch=branch,
            expected_head_sha=expected_head_sha,
            headline=f"Update {project.project_id} version to v{version}",
            additions={project.manifest_path: patched},
        )
        return True

    def _open_pull_request(
        self,
        project: ProjectConfig,
        draft: DraftRelease,
        *,
        base: str,
        version: str,
    ) -> None:
        label_ids = self._ensure_labels(project, draft)
        pr_id, _ = self._github.create_pull_request(
            repository_id=draft.repository_id,
            base=base,
            head=draft.branch_name,
            title=pull_request_title(project.project_id, version),
            body=pull_request_body(
                dispatcher=self._dispatcher,
                project=project.project_id,
                version=version,
            ),
        )
        self._github.update_pull_request(pr_id, label_ids=label_ids)

    def _ensure_labels(self, project: ProjectConfig, draft: DraftRelease) -> tuple[str, str]:
        release_label = self._github.ensure_label(self._config.bot.release_label, draft.release_label)
        project_label = self._github.ensure_label(project.project_id, draft.project_label)
        return (release_label.label_id, project_label.label_id)

    def _missing_labels(self, project: ProjectConfig, pr: DraftPullRequest) -> bool:
        wanted = {self._config.bot.release_label, project.project_id}
        return not wanted.issubset(pr.label_names)

    def _refresh_pull_request(
        self,
        pr: DraftPullRequest,
        *,
        project: ProjectConfig,
        version: str,
        rebasing: bool = False,
    ) -> None:
        self._github.update_pull_request(
            pr.pr_id,
            title=pull_request_title(project.project_id, version),
            body=pull_request_body(
                dispatcher=self._dispatcher,
                project=project.project_id,
                version=version,
                rebasing=rebasing,
            ),
        )

    def _post_stale_notice(
        self,
        project: ProjectConfig,
        pr: DraftPullRequest,
        applied: list[str],
    ) -> None:
        notice = stale_notice(self._config.bot.stale_after_days)
        log_warning(
            LOGGER,
            "release_branch_stale",
            project=project.project_id,
            pr_number=pr.number,
            age_days=self._age(pr).days,
        )
        last = pr.comments[-1] if pr.comments else None
        if last is not None and last.body == notice:
            self._github.update_comment(last.comment_id, notice)
            self._applied(project, applied, "update_stale_notice", comment_id=last.comment_id)
            return
        self._github.add_comment(pr.pr_id, notice)
        self._applied(project, applied, "post_stale_notice")

    def _is_stale(self, pr: DraftPullRequest) -> bool:
        return self._age(pr) > timedelta(days=self._config.bot.stale_after_days)

    def _age(self, pr: DraftPullRequest) -> timedelta:
        return self._now() - pr.created_at

    def _applied(
        self,
        project: ProjectConfig,
        applied: list[str],
        transition: str,
        **fields: object,
    ) -> None:
        applied.append(transition)
        log_event(
            LOGGER,
            "transition_applied",
            project=project.project_id,
            transition=transition,
            **fields,
        )


def _require_pull_request(draft: DraftRelease) -> DraftPullRequest:
    if draft.pull_request is None:
        raise ReleaseBotError(f"Project {draft.project} has no open draft release")
    return draft.pull_request


def _require_draft(draft: DraftRelease) -> tuple[BranchRef, DraftPullRequest]:
    pr = _require_pull_request(draft)
    if draft.branch is None:
        raise ReleaseBotError(
            f"Release branch {draft.branch_name} does not exist; use the recreate command"
        )
    return draft.branch, pr
