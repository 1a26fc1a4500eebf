from __future__ import annotations

from collections.abc import Iterable
from fnmatch import fnmatchcase
import logging

from relbot.config import ProjectConfig
from relbot.observability import log_event


LOGGER = logging.getLogger("relbot.relevance")


class ChangeRelevanceFilter:
    """Maps changed file paths to the projects whose draft release they affect.

    Globs use fnmatch semantics, so ``*`` also matches across ``/``.
    """

    def __init__(self, projects: tuple[ProjectConfig, ...]) -> None:
        self._projects = projects

    def relevant_projects(self, changed_paths: Iterable[str]) -> frozenset[str]:
        relevant: set[str] = set()
        for path in changed_paths:
            for project in self._projects:
                if project.project_id in relevant:
                    continue
                if any(fnmatchcase(path, pattern) for pattern in project.paths):
                    relevant.add(project.project_id)
        return frozenset(relevant)

    def ordered(self, changed_paths: Iterable[str]) -> tuple[str, ...]:
        paths = tuple(changed_paths)
        relevant = self.relevant_projects(paths)
        ordered = tuple(p.project_id for p in self._projects if p.project_id in relevant)
        log_event(
            LOGGER,
            "projects_of_relevance",
            changed_path_count=len(paths),
            projects=",".join(ordered),
        )
        return ordered
