from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal


BumpType = Literal["major", "minor", "patch"]
Reaction = Literal[
    "THUMBS_UP",
    "THUMBS_DOWN",
    "LAUGH",
    "HOORAY",
    "CONFUSED",
    "HEART",
    "ROCKET",
    "EYES",
]
DraftState = Literal["no_branch_no_pr", "branch_no_pr", "branch_pr_fresh", "branch_pr_stale"]
OutcomeStatus = Literal["succeeded", "failed", "skipped"]

BUMP_TYPES: tuple[BumpType, ...] = ("major", "minor", "patch")


@dataclass(frozen=True)
class Tag:
    name: str


@dataclass(frozen=True)
class Label:
    label_id: str
    name: str


@dataclass(frozen=True)
class Comment:
    comment_id: str
    body: str
    author_login: str


@dataclass(frozen=True)
class BranchRef:
    ref_id: str
    name: str
    head_sha: str


@dataclass(frozen=True)
class DraftPullRequest:
    pr_id: str
    number: int
    title: str
    body: str
    head_sha: str
    base_branch_name: str
    created_at: datetime
    comments: tuple[Comment, ...]
    label_names: tuple[str, ...] = ()


@dataclass(frozen=True)
class DraftRelease:
    repository_id: str
    project: str
    branch_name: str
    tags: tuple[Tag, ...]
    branch: BranchRef | None
    pull_request: DraftPullRequest | None
    release_label: Label | None
    project_label: Label | None

    @property
    def branch_exists(self) -> bool:
        return self.branch is not None


@dataclass(frozen=True)
class SetVersion:
    bump: BumpType


@dataclass(frozen=True)
class Rebase:
    pass


@dataclass(frozen=True)
class Recreate:
    pass


Command = SetVersion | Rebase | Recreate


@dataclass(frozen=True)
class InvalidCommandArgument:
    command: str
    argument: str | None
    reason: str


@dataclass(frozen=True)
class PushTrigger:
    branch: str
    head_sha: str
    changed_paths: frozenset[str]


@dataclass(frozen=True)
class CommentTrigger:
    comment_id: str
    body: str
    author_login: str
    issue_number: int
    issue_body: str


@dataclass(frozen=True)
class ProjectOutcome:
    project: str
    status: OutcomeStatus
    transitions: tuple[str, ...] = ()
    detail: str | None = None


@dataclass(frozen=True)
class RunReport:
    event: str
    outcomes: tuple[ProjectOutcome, ...]

    @property
    def failed(self) -> tuple[ProjectOutcome, ...]:
        return tuple(outcome for outcome in self.outcomes if outcome.status == "failed")

    @property
    def ok(self) -> bool:
        return not self.failed
