from __future__ import annotations

from hypothesis import given, strategies as st
import pytest

from relbot.commands import CommandDispatcher
from relbot.errors import VersionComputationError
from relbot.models import Comment, Tag
from relbot.versions import DEFAULT_VERSION, VersionResolver, current_version


def _resolver() -> VersionResolver:
    return VersionResolver(CommandDispatcher("bot"))


def _comment(comment_id: str, body: str) -> Comment:
    return Comment(comment_id=comment_id, body=body, author_login="alice")


def test_no_tags_gives_default_version() -> None:
    assert _resolver().next_version([], [], "patch") == "0.0.1"
    assert DEFAULT_VERSION == "0.0.1"


def test_no_tags_ignores_override_comments() -> None:
    comments = [_comment("c1", "@bot setversion major")]

    assert _resolver().next_version([], comments, "minor") == "0.0.1"


def test_requested_bump_applies_to_last_tag() -> None:
    tags = [Tag("proj@v0.9.0"), Tag("proj@v1.2.3")]

    assert _resolver().next_version(tags, [], "minor") == "1.3.0"
    assert _resolver().next_version(tags, [], "patch") == "1.2.4"
    assert _resolver().next_version(tags, [], "major") == "2.0.0"


def test_newest_setversion_comment_wins() -> None:
    tags = [Tag("proj@v1.2.3")]
    comments = [
        _comment("c1", "@bot setversion patch"),
        _comment("c2", "looks good"),
        _comment("c3", "@bot setversion major"),
        _comment("c4", "@bot rebase"),
    ]

    assert _resolver().next_version(tags, comments, "patch") == "2.0.0"
    assert _resolver().next_version(tags, comments, "minor") == "2.0.0"


def test_invalid_newest_override_fails_without_fallback() -> None:
    tags = [Tag("proj@v1.2.3")]
    comments = [
        _comment("c1", "@bot setversion minor"),
        _comment("c2", "@bot setversion huge"),
    ]

    with pytest.raises(VersionComputationError, match="c2"):
        _resolver().next_version(tags, comments, "patch")


def test_malformed_tag_version_is_rejected() -> None:
    with pytest.raises(VersionComputationError, match="proj@vbanana"):
        _resolver().next_version([Tag("proj@vbanana")], [], "patch")


def test_tag_without_version_marker_is_rejected() -> None:
    with pytest.raises(VersionComputationError, match="does not embed"):
        current_version([Tag("proj-1.2.3")])


def test_unknown_requested_bump_is_rejected() -> None:
    with pytest.raises(VersionComputationError, match="Unrecognized version type 'huge'"):
        _resolver().next_version([Tag("proj@v1.0.0")], [], "huge")


def test_current_version_reads_last_tag() -> None:
    version = current_version([Tag("proj@v1.0.0"), Tag("proj@v3.4.5")])

    assert (version.major, version.minor, version.patch) == (3, 4, 5)


_VERSION_PARTS = st.integers(min_value=0, max_value=500)
_BUMPS = st.sampled_from(("major", "minor", "patch"))
_BODIES = st.sampled_from(
    (
        "lgtm",
        "@bot rebase",
        "@bot recreate",
        "@bot setversion major",
        "@bot setversion minor",
        "@bot setversion patch",
    )
)


@given(_VERSION_PARTS, _VERSION_PARTS, _VERSION_PARTS, st.lists(_BODIES, max_size=6), _BUMPS)
def test_next_version_is_deterministic_and_increasing(
    major: int, minor: int, patch: int, bodies: list[str], bump: str
) -> None:
    tags = [Tag(f"proj@v{major}.{minor}.{patch}")]
    comments = [_comment(f"c{idx}", body) for idx, body in enumerate(bodies)]
    resolver = _resolver()

    first = resolver.next_version(tags, comments, bump)
    second = resolver.next_version(tags, comments, bump)

    assert first == second
    parts = tuple(int(part) for part in first.split("."))
    assert parts > (major, minor, patch)
