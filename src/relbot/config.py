from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import os
from pathlib import Path
import tomllib
from typing import cast


@dataclass(frozen=True)
class RepoConfig:
    owner: str
    name: str
    default_branch: str = "main"
    tracked_branches: tuple[str, ...] = ("main",)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def remote_url(self) -> str:
        return f"https://github.com/{self.owner}/{self.name}"

    def tracks(self, branch: str) -> bool:
        return branch in self.tracked_branches


@dataclass(frozen=True)
class BotConfig:
    name: str = "relbot"
    branch_prefix: str = "relbot"
    release_label: str = "release"
    stale_after_days: int = 30
    auto_rebase_on_push: bool = False
    command_users: frozenset[str] = frozenset()
    comment_history_limit: int = 50

    def release_branch(self, project: str) -> str:
        return f"{self.branch_prefix}-{project}"

    def allows(self, login: str) -> bool:
        if not self.command_users:
            return True
        normalized = login.strip().lower()
        if not normalized:
            return False
        return normalized in self.command_users


@dataclass(frozen=True)
class ProjectConfig:
    project_id: str
    paths: tuple[str, ...]
    manifest_path: str


@dataclass(frozen=True)
class AppConfig:
    repo: RepoConfig
    bot: BotConfig
    projects: tuple[ProjectConfig, ...]

    def project(self, project_id: str) -> ProjectConfig | None:
        for project in self.projects:
            if project.project_id == project_id:
                return project
        return None

    def require_project(self, project_id: str) -> ProjectConfig:
        project = self.project(project_id)
        if project is None:
            available = ", ".join(p.project_id for p in self.projects)
            raise ConfigError(f"Unknown project {project_id!r}; expected one of: {available}")
        return project


class ConfigError(ValueError):
    pass


def load_config(path: Path, *, environ: Mapping[str, str] | None = None) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)
    return parse_config(data, environ=environ)


def parse_config(data: dict[str, object], *, environ: Mapping[str, str] | None = None) -> AppConfig:
    env = os.environ if environ is None else environ
    repo_data = _optional_table(data, "repo") or {}
    bot_data = _optional_table(data, "bot") or {}
    project_data = _require_table(data, "project")

    repo = _parse_repo_config(repo_data=repo_data, environ=env)
    bot = BotConfig(
        name=_str_with_default(bot_data, "name", "relbot"),
        branch_prefix=_str_with_default(bot_data, "branch_prefix", "relbot"),
        release_label=_str_with_default(bot_data, "release_label", "release"),
        stale_after_days=_int_with_default(bot_data, "stale_after_days", 30),
        auto_rebase_on_push=_bool_with_default(bot_data, "auto_rebase_on_push", False),
        command_users=_logins_with_default(bot_data, "command_users"),
        comment_history_limit=_int_with_default(bot_data, "comment_history_limit", 50),
    )
    if bot.stale_after_days < 1:
        raise ConfigError("bot.stale_after_days must be >= 1")
    if not 1 <= bot.comment_history_limit <= 100:
        raise ConfigError("bot.comment_history_limit must be between 1 and 100")
    if any(ch.isspace() for ch in bot.name):
        raise ConfigError("bot.name must not contain whitespace")

    projects = _load_project_configs(project_data)
    return AppConfig(repo=repo, bot=bot, projects=projects)


def _parse_repo_config(*, repo_data: dict[str, object], environ: Mapping[str, str]) -> RepoConfig:
    owner = _optional_str(repo_data, "owner")
    name = _optional_str(repo_data, "name")
    if owner is None or name is None:
        env_owner, env_name = _repository_from_env(environ)
        owner = owner or env_owner
        name = name or env_name
    default_branch = _str_with_default(repo_data, "default_branch", "main")
    tracked = _tuple_of_str_with_default(repo_data, "tracked_branches", (default_branch,))
    if not tracked:
        raise ConfigError("repo.tracked_branches must contain at least one branch")
    return RepoConfig(
        owner=owner,
        name=name,
        default_branch=default_branch,
        tracked_branches=tracked,
    )


def _repository_from_env(environ: Mapping[str, str]) -> tuple[str, str]:
    raw = environ.get("GITHUB_REPOSITORY", "").strip()
    owner, sep, name = raw.partition("/")
    if not sep or not owner or not name:
        raise ConfigError(
            "repo.owner and repo.name are required unless GITHUB_REPOSITORY is set"
        )
    return owner, name


def _load_project_configs(project_data: dict[str, object]) -> tuple[ProjectConfig, ...]:
    if not project_data:
        raise ConfigError("[project] must define at least one [project.<id>] table")
    projects: list[ProjectConfig] = []
    for project_id, raw_value in project_data.items():
        if not project_id or any(not (ch.isalnum() or ch == "_") for ch in project_id):
            raise ConfigError(
                f"Invalid project id {project_id!r}: use letters, digits and underscores"
            )
        table = _require_nested_table(raw_value, table_name=f"[project.{project_id}]")
        paths = _paths(table, table_name=f"[project.{project_id}]")
        projects.append(
            ProjectConfig(
                project_id=project_id,
                paths=paths,
                manifest_path=_str_with_default(
                    table, "manifest_path", f"{project_id}/package.json"
                ),
            )
        )
    return tuple(projects)


def _paths(data: dict[str, object], *, table_name: str) -> tuple[str, ...]:
    value = data.get("paths")
    if isinstance(value, str) and value:
        return (value,)
    if not isinstance(value, list) or not value:
        raise ConfigError(f"{table_name}.paths is required and must be a non-empty list")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item:
            raise ConfigError(f"{table_name}.paths must contain non-empty strings")
        out.append(item)
    return tuple(out)


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_nested_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"{table_name} must have string keys")
    return cast(dict[str, object], value)


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item:
            raise ConfigError(f"{key} must be a list of strings")
        if item not in out:
            out.append(item)
    return tuple(out)


def _logins_with_default(data: dict[str, object], key: str) -> frozenset[str]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: set[str] = set()
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        login = item.strip().lower()
        if not login:
            raise ConfigError(f"{key} entries must be non-empty strings")
        out.add(login)
    return frozenset(out)
