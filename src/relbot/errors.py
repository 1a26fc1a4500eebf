from __future__ import annotations


class ReleaseBotError(RuntimeError):
    """Base class for failures that abort processing of a single project."""


class InvalidCommandError(ReleaseBotError):
    """A bot command comment carried an argument the bot cannot act on."""


class VersionComputationError(ReleaseBotError):
    """The next version could not be derived from a tag or an override comment."""


class PreconditionConflict(ReleaseBotError):
    """A branch moved after it was observed; the mutation was rejected."""


class RebaseConflict(ReleaseBotError):
    """git could not rebase the release branch onto its base branch."""


class ManifestNotFound(ReleaseBotError):
    """The project manifest does not exist on the release branch."""


class GitHubApiError(ReleaseBotError):
    """A GitHub request failed or returned an unexpected payload."""
