from __future__ import annotations

from urllib.parse import urlparse

from yt_relay.errors import ValidationError
from yt_relay.types import MEDIA_KINDS

SUPPORTED_DOMAINS = ("youtube.com", "youtu.be")


def is_supported_url(url: str) -> bool:
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    host = parsed.hostname.lower()
    return any(host == domain or host.endswith(f".{domain}") for domain in SUPPORTED_DOMAINS)


def is_http_url(url: str) -> bool:
    parsed = urlparse(url.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def validate_submission(url: str, kind: str, quality: str | None = None) -> None:
    if not url or not url.strip():
        raise ValidationError("URL is required")
    if not is_supported_url(url):
        raise ValidationError("Must be a valid YouTube URL")
    if kind not in MEDIA_KINDS:
        raise ValidationError(f"Format must be one of: {', '.join(MEDIA_KINDS)}")
    if quality is not None and not isinstance(quality, str):
        raise ValidationError("Quality must be a string such as '720p'")
