from __future__ import annotations

from typing import cast

from relbot.models import (
    BUMP_TYPES,
    BumpType,
    Command,
    InvalidCommandArgument,
    Rebase,
    Recreate,
    SetVersion,
)


class CommandDispatcher:
    """Parses ``@<bot> <command>`` comments.

    Matching is a literal, case-sensitive prefix test against the start of the
    body. Anything else is not a command and parses to ``None``.
    """

    def __init__(self, bot_name: str) -> None:
        self.bot_name = bot_name
        self.rebase_prefix = f"@{bot_name} rebase"
        self.recreate_prefix = f"@{bot_name} recreate"
        self.set_version_prefix = f"@{bot_name} setversion"

    def parse(self, body: str) -> Command | InvalidCommandArgument | None:
        if body.startswith(self.set_version_prefix):
            bump = self.bump_argument(body)
            if bump is None:
                raw = _third_token(body)
                reason = (
                    "missing version type"
                    if raw is None
                    else f"invalid version type: {raw}"
                )
                return InvalidCommandArgument(
                    command=self.set_version_prefix,
                    argument=raw,
                    reason=f"{reason} (expected one of: {', '.join(BUMP_TYPES)})",
                )
            return SetVersion(bump=bump)
        if body.startswith(self.rebase_prefix):
            return Rebase()
        if body.startswith(self.recreate_prefix):
            return Recreate()
        return None

    def is_set_version(self, body: str) -> bool:
        return body.startswith(self.set_version_prefix)

    def bump_argument(self, body: str) -> BumpType | None:
        raw = _third_token(body)
        if raw is None or raw not in BUMP_TYPES:
            return None
        return cast(BumpType, raw)

    def help_lines(self) -> tuple[str, ...]:
        return (
            f"- `{self.rebase_prefix}` will rebase this PR",
            f"- `{self.recreate_prefix}` will recreate this PR, "
            "overwriting any edits that have been made to it",
            f"- `{self.set_version_prefix} [{'|'.join(BUMP_TYPES)}]` "
            "will set the version for this PR",
        )


def _third_token(body: str) -> str | None:
    tokens = body.split()
    if len(tokens) < 3:
        return None
    return tokens[2]
