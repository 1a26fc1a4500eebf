from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
import logging
import os
import subprocess


class CommandError(RuntimeError):
    def __init__(self, message: str, *, returncode: int, stdout: str, stderr: str) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


LOGGER = logging.getLogger("relbot.shell")
_REDACTED = "***"


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def redact(text: str, secrets: tuple[str, ...]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, _REDACTED)
    return text


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    env: Mapping[str, str] | None = None,
    secrets: tuple[str, ...] = (),
    check: bool = True,
) -> str:
    """Run ``argv`` and return its stdout.

    ``env`` entries are layered over the current environment. Any value listed
    in ``secrets`` is masked in logs and in the raised ``CommandError``.
    """
    proc = subprocess.run(
        argv,
        cwd=str(cwd) if cwd else None,
        input=input_text,
        env={**os.environ, **env} if env else None,
        text=True,
        capture_output=True,
        check=False,
    )
    if check and proc.returncode != 0:
        command = redact(" ".join(argv), secrets)
        stdout = redact(proc.stdout, secrets)
        stderr = redact(proc.stderr, secrets)
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            command,
            proc.returncode,
            _preview(stderr),
            _preview(stdout),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {command}\n"
            f"exit: {proc.returncode}\n"
            f"stdout:\n{stdout}\n"
            f"stderr:\n{stderr}",
            returncode=proc.returncode,
            stdout=stdout,
            stderr=stderr,
        )
    return proc.stdout
