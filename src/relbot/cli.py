from __future__ import annotations

import argparse
from collections.abc import Mapping
import os
from pathlib import Path

from relbot.bot import ReleaseBot
from relbot.commands import CommandDispatcher
from relbot.config import AppConfig, load_config
from relbot.git_ops import GitRepoManager
from relbot.github_gateway import GitHubGateway
from relbot.models import BUMP_TYPES, RunReport
from relbot.observability import configure_logging
from relbot.reconciler import ReleaseStateReconciler
from relbot.relevance import ChangeRelevanceFilter
from relbot.triggers import (
    TriggerError,
    load_event_payload,
    parse_comment_event,
    parse_push_event,
)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("relbot.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging (default mode: high)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="relbot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Handle the GitHub Actions event that started this workflow"
    )
    _add_common_arguments(run_parser)
    run_parser.add_argument(
        "--event-name",
        type=str,
        default=None,
        help="Event name (defaults to GITHUB_EVENT_NAME)",
    )
    run_parser.add_argument(
        "--event-path",
        type=Path,
        default=None,
        help="Path to the event payload JSON (defaults to GITHUB_EVENT_PATH)",
    )
    run_parser.add_argument(
        "--token",
        type=str,
        default=None,
        help="GitHub token (defaults to GH_TOKEN, then GITHUB_TOKEN)",
    )

    version_parser = subparsers.add_parser(
        "next-version", help="Print the next version of a project's draft release"
    )
    _add_common_arguments(version_parser)
    version_parser.add_argument("--project", type=str, required=True)
    version_parser.add_argument("--bump", choices=BUMP_TYPES, default="patch")
    version_parser.add_argument("--token", type=str, default=None)

    projects_parser = subparsers.add_parser(
        "projects", help="Print the projects whose release the given paths affect"
    )
    _add_common_arguments(projects_parser)
    projects_parser.add_argument("paths", nargs="+")

    return parser


def main() -> None:
    args = build_parser().parse_args()
    configure_logging(args.verbose)
    config = load_config(args.config)

    if args.command == "run":
        report = _cmd_run(config, args)
        if not report.ok:
            raise SystemExit(1)
        return
    if args.command == "next-version":
        _cmd_next_version(config, args)
        return
    if args.command == "projects":
        _cmd_projects(config, paths=tuple(args.paths))
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_run(
    config: AppConfig,
    args: argparse.Namespace,
    *,
    environ: Mapping[str, str] | None = None,
) -> RunReport:
    env = os.environ if environ is None else environ
    event_name = args.event_name or env.get("GITHUB_EVENT_NAME", "")
    event_path = args.event_path or _path_from_env(env, "GITHUB_EVENT_PATH")
    if not event_name or event_path is None:
        raise TriggerError("--event-name and --event-path are required outside GitHub Actions")

    token = _resolve_token(args.token, env)
    github = GitHubGateway(config.repo.owner, config.repo.name, token=token)
    bot = _build_bot(config, github=github, git=GitRepoManager(config.repo, token=token))
    payload = load_event_payload(event_path)

    if event_name == "push":
        push = parse_push_event(payload, files_source=github)
        if push is None:
            return RunReport(event=event_name, outcomes=())
        return bot.handle_push(push)
    if event_name == "issue_comment":
        comment = parse_comment_event(payload)
        if comment is None:
            return RunReport(event=event_name, outcomes=())
        return bot.handle_comment(comment)
    raise TriggerError(f"Unsupported event: {event_name}")


def _cmd_next_version(config: AppConfig, args: argparse.Namespace) -> None:
    project = config.require_project(args.project)
    token = _resolve_token(args.token, os.environ)
    github = GitHubGateway(config.repo.owner, config.repo.name, token=token)
    reconciler = ReleaseStateReconciler(
        config,
        github=github,
        git=GitRepoManager(config.repo, token=token),
    )
    draft = reconciler.observe(project)
    print(reconciler.next_version(draft, args.bump))


def _cmd_projects(config: AppConfig, *, paths: tuple[str, ...]) -> None:
    for project_id in ChangeRelevanceFilter(config.projects).ordered(paths):
        print(project_id)


def _build_bot(
    config: AppConfig,
    *,
    github: GitHubGateway,
    git: GitRepoManager,
) -> ReleaseBot:
    dispatcher = CommandDispatcher(config.bot.name)
    reconciler = ReleaseStateReconciler(
        config,
        github=github,
        git=git,
        dispatcher=dispatcher,
    )
    return ReleaseBot(config, reconciler=reconciler, dispatcher=dispatcher)


def _resolve_token(explicit: str | None, environ: Mapping[str, str]) -> str | None:
    if explicit:
        return explicit
    for key in ("GH_TOKEN", "GITHUB_TOKEN"):
        value = environ.get(key, "").strip()
        if value:
            return value
    return None


def _path_from_env(environ: Mapping[str, str], key: str) -> Path | None:
    value = environ.get(key, "").strip()
    if not value:
        return None
    return Path(value)
