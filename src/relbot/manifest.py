from __future__ import annotations

import re


_VERSION_FIELD = re.compile(r'"version": "([^"\n]*)"')


def patch_version(manifest_text: str, new_version: str) -> str:
    """Replace the first ``"version": "..."`` value, leaving every other byte alone.

    A manifest without the field is returned unchanged.
    """
    return _VERSION_FIELD.sub(lambda _: f'"version": "{new_version}"', manifest_text, count=1)


def read_version(manifest_text: str) -> str | None:
    match = _VERSION_FIELD.search(manifest_text)
    if match is None:
        return None
    return match.group(1)
