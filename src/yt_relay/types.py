from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

JobStatus = Literal["queued", "downloading", "converting", "uploading", "completed", "failed"]
MediaKind = Literal["audio", "video"]
ProxyType = Literal["http", "https", "socks4", "socks5"]

JOB_STATUSES: tuple[str, ...] = ("queued", "downloading", "converting", "uploading", "completed", "failed")
ACTIVE_STATUSES: tuple[str, ...] = ("queued", "downloading", "converting", "uploading")
TERMINAL_STATUSES: tuple[str, ...] = ("completed", "failed")
MEDIA_KINDS: tuple[str, ...] = ("audio", "video")
PROXY_TYPES: tuple[str, ...] = ("http", "https", "socks4", "socks5")

CANCELLED_MESSAGE = "Cancelled by user"


@dataclass(slots=True)
class ProxyConfig:
    type: ProxyType
    host: str
    port: int
    username: str | None = None
    password: str | None = None


@dataclass(slots=True)
class VideoInfo:
    title: str | None
    thumbnail: str | None
    duration: float | None = None


@dataclass(slots=True)
class FetchRequest:
    job_id: str
    url: str
    kind: MediaKind
    quality: str | None = None
    proxy: ProxyConfig | None = None
    cookies_path: str | None = None


@dataclass(slots=True)
class ProgressUpdate:
    status: JobStatus
    progress: int
    speed: str | None = None
    eta: str | None = None


@dataclass(slots=True)
class FetchResult:
    file_path: str
    file_size: int


@dataclass(slots=True)
class UploadProgress:
    offset: int
    total: int
    progress: int
    speed: str | None
    eta: str | None


@dataclass(slots=True)
class UploadResult:
    location: str
    offset: int
    chunks: int


@dataclass(slots=True)
class ConnectionTestResult:
    success: bool
    message: str
    details: str | None = None
