from __future__ import annotations

import re

from yt_relay.services.downloader import artifact_extension

_UNSAFE_TITLE_RE = re.compile(r"[^\w\s-]")
_UNSAFE_PATH_RE = re.compile(r"[^a-zA-Z0-9._-]+")


def remote_filename(title: str | None, kind: str) -> str:
    safe_title = _UNSAFE_TITLE_RE.sub("", title or "")[:100].strip() or "video"
    return f"{safe_title}.{artifact_extension(kind)}"


def sanitize_path_component(value: str, fallback: str) -> str:
    clean = _UNSAFE_PATH_RE.sub("_", value.strip())
    clean = clean.strip("._")
    return clean or fallback
