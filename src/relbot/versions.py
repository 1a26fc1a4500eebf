from __future__ import annotations

from collections.abc import Sequence
import logging

import semver

from relbot.commands import CommandDispatcher
from relbot.errors import VersionComputationError
from relbot.models import BUMP_TYPES, Comment, Tag
from relbot.observability import log_event


LOGGER = logging.getLogger("relbot.versions")
DEFAULT_VERSION = "0.0.1"
_TAG_VERSION_SEPARATOR = "@v"


class VersionResolver:
    """Derives the next release version from tag history and override comments.

    The newest ``setversion`` comment on the draft release PR wins over the
    bump type requested by the caller. The result depends only on the inputs.
    """

    def __init__(self, dispatcher: CommandDispatcher) -> None:
        self._dispatcher = dispatcher

    def next_version(
        self,
        tags: Sequence[Tag],
        comments: Sequence[Comment],
        requested_bump: str,
    ) -> str:
        if not tags:
            log_event(LOGGER, "version_resolved", source="default", version=DEFAULT_VERSION)
            return DEFAULT_VERSION

        last_tag = tags[-1]
        current = current_version(tags)

        for comment in reversed(comments):
            if not self._dispatcher.is_set_version(comment.body):
                continue
            bump = self._dispatcher.bump_argument(comment.body)
            if bump is None:
                raise VersionComputationError(
                    f"Comment {comment.comment_id} requests an unrecognized version type: "
                    f"{comment.body!r}"
                )
            version = _bump(current, bump, source=f"comment {comment.comment_id}")
            log_event(
                LOGGER,
                "version_resolved",
                source="override_comment",
                comment_id=comment.comment_id,
                tag=last_tag.name,
                bump=bump,
                version=version,
            )
            return version

        version = _bump(current, requested_bump, source=f"tag {last_tag.name}")
        log_event(
            LOGGER,
            "version_resolved",
            source="requested_bump",
            tag=last_tag.name,
            bump=requested_bump,
            version=version,
        )
        return version


def current_version(tags: Sequence[Tag]) -> semver.Version:
    if not tags:
        raise VersionComputationError("No tags to read the current version from")
    tag = tags[-1]
    _, sep, raw_version = tag.name.partition(_TAG_VERSION_SEPARATOR)
    if not sep:
        raise VersionComputationError(f"Tag {tag.name!r} does not embed a version after '@v'")
    try:
        return semver.Version.parse(raw_version)
    except ValueError as exc:
        raise VersionComputationError(
            f"Tag {tag.name!r} embeds a malformed version: {raw_version!r}"
        ) from exc


def _bump(current: semver.Version, bump: str, *, source: str) -> str:
    if bump == "major":
        return str(current.bump_major())
    if bump == "minor":
        return str(current.bump_minor())
    if bump == "patch":
        return str(current.bump_patch())
    raise VersionComputationError(
        f"Unrecognized version type {bump!r} from {source}; "
        f"expected one of: {', '.join(BUMP_TYPES)}"
    )
