from __future__ import annotations

import re

from relbot.commands import CommandDispatcher


def note(message: str) -> str:
    return f"> [!NOTE]\n> {message}"


def important(message: str) -> str:
    return f"> [!IMPORTANT]\n> {message}"


def caution(message: str) -> str:
    return f"> [!CAUTION]\n> {message}"


def hidden(message: str) -> str:
    return f"[//]: # ({message})"


def project_marker(bot_name: str, project: str) -> str:
    return hidden(f"{bot_name}-project:{project}")


def extract_project(text: str, bot_name: str) -> str | None:
    pattern = re.compile(r"\[//]:\s#\s\(" + re.escape(bot_name) + r"-project:(\w+)\)")
    match = pattern.search(text)
    return match.group(1) if match else None


def pull_request_title(project: str, version: str) -> str:
    return f"Release `{project}` v{version}"


def pull_request_body(
    *,
    dispatcher: CommandDispatcher,
    project: str,
    version: str,
    rebasing: bool = False,
) -> str:
    bot = dispatcher.bot_name
    parts = [project_marker(bot, project), "\n"]
    if rebasing:
        parts.extend(
            [
                hidden(f"{bot}-start"),
                "\n\n",
                important(f"{bot} is rebasing this PR"),
                "\n\n",
                hidden(f"{bot}-end"),
                "\n",
            ]
        )
    commands = "\n".join(dispatcher.help_lines())
    parts.append(
        f"""
This PR was created automatically by {bot} to track the next release.
The next version for this release is v{version}.

---

<details>
<summary>{bot} commands and options</summary>
<br />

You can trigger {bot} actions by commenting on this PR:
{commands}
</details>
"""
    )
    return "".join(parts)


def stale_notice(stale_after_days: int) -> str:
    return note(
        f"Branch is now older than the {stale_after_days} day limit. "
        "Please manually `recreate` and merge it when ready."
    )


def rebase_failed_notice() -> str:
    return caution(
        "Failed to rebase the branch. "
        "Please either manually rebase it or use the `recreate` command."
    )


def invalid_command_notice(reason: str) -> str:
    return caution(f"Could not run the command: {reason}.")
