from __future__ import annotations

from collections.abc import Callable
import logging

from relbot.commands import CommandDispatcher
from relbot.config import AppConfig, ProjectConfig
from relbot.models import CommentTrigger, ProjectOutcome, PushTrigger, RunReport
from relbot.observability import log_error, log_event, log_group, log_warning
from relbot.reconciler import ReleaseStateReconciler
from relbot.relevance import ChangeRelevanceFilter
from relbot.templates import extract_project


LOGGER = logging.getLogger("relbot.bot")


class ReleaseBot:
    """Runs one trigger across every project it concerns.

    Projects are handled one after another in configuration order. A failure
    in one project is recorded in the report and does not stop the others.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        reconciler: ReleaseStateReconciler,
        dispatcher: CommandDispatcher | None = None,
        relevance: ChangeRelevanceFilter | None = None,
    ) -> None:
        self._config = config
        self._reconciler = reconciler
        self._dispatcher = dispatcher or CommandDispatcher(config.bot.name)
        self._relevance = relevance or ChangeRelevanceFilter(config.projects)

    def handle_push(self, trigger: PushTrigger) -> RunReport:
        log_event(
            LOGGER,
            "trigger_received",
            event="push",
            branch=trigger.branch,
            head_sha=trigger.head_sha,
            changed_path_count=len(trigger.changed_paths),
        )
        if not self._config.repo.tracks(trigger.branch):
            log_event(
                LOGGER,
                "trigger_ignored",
                event="push",
                reason="untracked_branch",
                branch=trigger.branch,
            )
            return self._finish("push", [])

        with log_group("Files changed in push"):
            for path in sorted(trigger.changed_paths):
                log_event(LOGGER, "changed_path", path=path)
        with log_group("Projects of relevance"):
            project_ids = self._relevance.ordered(trigger.changed_paths)

        outcomes: list[ProjectOutcome] = []
        for project_id in project_ids:
            project = self._config.require_project(project_id)
            outcomes.append(
                self._run_project(
                    project,
                    lambda project=project: self._reconciler.reconcile_push(project, trigger),
                )
            )
        return self._finish("push", outcomes)

    def handle_comment(self, trigger: CommentTrigger) -> RunReport:
        log_event(
            LOGGER,
            "trigger_received",
            event="issue_comment",
            pr_number=trigger.issue_number,
            author=trigger.author_login,
        )
        if self._dispatcher.parse(trigger.body) is None:
            log_event(LOGGER, "trigger_ignored", event="issue_comment", reason="not_a_command")
            return self._finish("issue_comment", [])

        project_id = extract_project(trigger.issue_body, self._config.bot.name)
        if project_id is None:
            log_warning(
                LOGGER,
                "comment_ignored",
                pr_number=trigger.issue_number,
                reason="no_project_marker",
            )
            return self._finish("issue_comment", [])
        project = self._config.project(project_id)
        if project is None:
            log_warning(
                LOGGER,
                "comment_ignored",
                pr_number=trigger.issue_number,
                project=project_id,
                reason="unknown_project",
            )
            return self._finish("issue_comment", [])

        if not self._config.bot.allows(trigger.author_login):
            log_warning(
                LOGGER,
                "comment_ignored",
                pr_number=trigger.issue_number,
                project=project_id,
                author=trigger.author_login,
                reason="unauthorized",
            )
            outcome = ProjectOutcome(project=project_id, status="skipped", detail="unauthorized")
            return self._finish("issue_comment", [outcome])

        outcome = self._run_project(
            project, lambda: self._reconciler.apply_comment(project, trigger)
        )
        return self._finish("issue_comment", [outcome])

    def _run_project(
        self,
        project: ProjectConfig,
        action: Callable[[], tuple[str, ...]],
    ) -> ProjectOutcome:
        with log_group(f"Project {project.project_id}"):
            try:
                transitions = action()
            except Exception as exc:  # noqa: BLE001
                log_error(
                    LOGGER,
                    "project_failed",
                    project=project.project_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return ProjectOutcome(
                    project=project.project_id,
                    status="failed",
                    detail=f"{type(exc).__name__}: {exc}",
                )
        log_event(
            LOGGER,
            "project_succeeded",
            project=project.project_id,
            transitions=",".join(transitions) or None,
        )
        return ProjectOutcome(
            project=project.project_id,
            status="succeeded",
            transitions=transitions,
        )

    def _finish(self, event: str, outcomes: list[ProjectOutcome]) -> RunReport:
        report = RunReport(event=event, outcomes=tuple(outcomes))
        log_event(
            LOGGER,
            "run_completed",
            event=event,
            project_count=len(report.outcomes),
            failed_count=len(report.failed),
        )
        return report
