from __future__ import annotations

import base64
from dataclasses import dataclass
from pathlib import Path
import logging
import tempfile

from relbot.config import RepoConfig
from relbot.errors import PreconditionConflict, RebaseConflict
from relbot.observability import log_event
from relbot.shell import CommandError, run


LOGGER = logging.getLogger("relbot.git_ops")
_LEASE_REJECTION_MARKERS = ("stale info",)


@dataclass(frozen=True)
class GitIdentity:
    name: str
    email: str


DEFAULT_IDENTITY = GitIdentity(
    name="github-actions[bot]",
    email="41898282+github-actions[bot]@users.noreply.github.com",
)


class GitRepoManager:
    """Local git plumbing used when a release branch has to be rebased.

    Every other branch mutation goes through the GitHub API; rebasing needs a
    real working tree, so it is done in a throwaway checkout.
    """

    def __init__(
        self,
        repo: RepoConfig,
        *,
        token: str | None = None,
        identity: GitIdentity = DEFAULT_IDENTITY,
        work_root: Path | None = None,
    ) -> None:
        self.repo = repo
        self.identity = identity
        self.work_root = work_root
        self._token = token

    def rebase_release_branch(self, *, branch: str, base: str, expected_head_sha: str) -> str:
        """Rebase ``branch`` onto ``origin/<base>`` and force-push it with a lease.

        Returns the new head SHA. Conflicts are resolved in favour of the base
        branch (``-X ours``); anything git still cannot resolve raises
        ``RebaseConflict``.
        """
        with tempfile.TemporaryDirectory(prefix="relbot-", dir=self.work_root) as tmp:
            checkout_path = Path(tmp) / self.repo.name
            self.prepare_checkout(checkout_path, branches=(base, branch))
            self.checkout_branch(checkout_path, branch)

            observed = self.current_head_sha(checkout_path)
            if observed != expected_head_sha:
                raise PreconditionConflict(
                    f"Branch {branch} is at {observed}, expected {expected_head_sha}"
                )

            self.rebase_onto(checkout_path, branch=branch, base=base)
            self.push_with_lease(checkout_path, branch=branch, expected_head_sha=expected_head_sha)
            return self.current_head_sha(checkout_path)

    def prepare_checkout(self, checkout_path: Path, *, branches: tuple[str, ...]) -> None:
        log_event(
            LOGGER,
            "git_prepare_checkout",
            checkout_path=str(checkout_path),
            branches=",".join(branches),
        )
        checkout_path.mkdir(parents=True, exist_ok=True)
        self._git(checkout_path, "init", "--quiet")
        self._git(checkout_path, "remote", "add", "origin", self.repo.remote_url)
        self._git(checkout_path, "config", "user.name", self.identity.name)
        self._git(checkout_path, "config", "user.email", self.identity.email)
        header = self._auth_header()
        if header is not None:
            self._git(
                checkout_path,
                "config",
                "http.https://github.com/.extraheader",
                header,
            )
        refspecs = [f"+refs/heads/{name}:refs/remotes/origin/{name}" for name in branches]
        self._git(checkout_path, "fetch", "--no-tags", "origin", *refspecs)

    def checkout_branch(self, checkout_path: Path, branch: str) -> None:
        self._git(checkout_path, "checkout", "--quiet", "-B", branch, f"origin/{branch}")

    def rebase_onto(self, checkout_path: Path, *, branch: str, base: str) -> None:
        log_event(
            LOGGER,
            "git_rebase",
            checkout_path=str(checkout_path),
            branch=branch,
            base=base,
        )
        try:
            self._git(checkout_path, "rebase", "--strategy-option", "ours", f"origin/{base}")
        except CommandError as exc:
            log_event(
                LOGGER,
                "git_rebase_failed",
                branch=branch,
                base=base,
                exit_code=exc.returncode,
            )
            self._git(checkout_path, "rebase", "--abort", check=False)
            raise RebaseConflict(f"Could not rebase {branch} onto {base}") from exc

    def push_with_lease(self, checkout_path: Path, *, branch: str, expected_head_sha: str) -> None:
        log_event(
            LOGGER,
            "git_push",
            checkout_path=str(checkout_path),
            branch=branch,
            expected_head_sha=expected_head_sha,
        )
        try:
            self._git(
                checkout_path,
                "push",
                f"--force-with-lease={branch}:{expected_head_sha}",
                "origin",
                f"HEAD:refs/heads/{branch}",
            )
        except CommandError as exc:
            log_event(
                LOGGER,
                "git_push_failed",
                checkout_path=str(checkout_path),
                branch=branch,
                error_type=type(exc).__name__,
            )
            if any(marker in exc.stderr.lower() for marker in _LEASE_REJECTION_MARKERS):
                raise PreconditionConflict(
                    f"Branch {branch} moved away from {expected_head_sha} before the push"
                ) from exc
            raise

    def current_head_sha(self, checkout_path: Path) -> str:
        return self._git(checkout_path, "rev-parse", "HEAD").strip()

    def _auth_header(self) -> str | None:
        if not self._token:
            return None
        credentials = base64.b64encode(f"x-access-token:{self._token}".encode()).decode("ascii")
        return f"AUTHORIZATION: basic {credentials}"

    def _secrets(self) -> tuple[str, ...]:
        header = self._auth_header()
        if header is None or self._token is None:
            return ()
        return (self._token, header.split(" ", 2)[-1])

    def _git(self, checkout_path: Path, *args: str, check: bool = True) -> str:
        return run(
            ["git", "-C", str(checkout_path), *args],
            secrets=self._secrets(),
            check=check,
        )
