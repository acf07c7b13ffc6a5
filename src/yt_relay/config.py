from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

MIB = 1024 * 1024
GIB = 1024 * MIB


@dataclass(slots=True)
class Settings:
    host: str
    port: int
    mcp_path: str
    health_path: str
    ws_path: str
    data_dir: Path
    database_path: Path
    downloads_dir: Path
    cookies_dir: Path
    ytdlp_binary: str
    probe_timeout_seconds: int
    fetch_timeout_seconds: int
    upload_chunk_size: int
    upload_timeout_seconds: int
    min_free_bytes: int
    progress_cache_size: int


def _as_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    return int(raw)


def _normalized_path(path: str) -> str:
    if not path.startswith("/"):
        path = f"/{path}"
    return path


def load_settings() -> Settings:
    load_dotenv()
    data_dir = Path(os.getenv("DATA_DIR", "/data")).resolve()
    database_path = Path(os.getenv("DATABASE_PATH", str(data_dir / "yt_relay.sqlite3"))).resolve()

    return Settings(
        host=os.getenv("HOST", "0.0.0.0"),
        port=_as_int("PORT", 3000),
        mcp_path=_normalized_path(os.getenv("MCP_PATH", "/mcp")),
        health_path=_normalized_path(os.getenv("HEALTH_PATH", "/healthz")),
        ws_path=_normalized_path(os.getenv("WS_PATH", "/ws")),
        data_dir=data_dir,
        database_path=database_path,
        downloads_dir=data_dir / "downloads",
        cookies_dir=data_dir / "cookies",
        ytdlp_binary=os.getenv("YTDLP_BINARY", "yt-dlp"),
        probe_timeout_seconds=_as_int("PROBE_TIMEOUT_SECONDS", 30),
        fetch_timeout_seconds=_as_int("FETCH_TIMEOUT_SECONDS", 3600),
        upload_chunk_size=_as_int("UPLOAD_CHUNK_SIZE", 5 * MIB),
        upload_timeout_seconds=_as_int("UPLOAD_TIMEOUT_SECONDS", 120),
        min_free_bytes=_as_int("MIN_FREE_BYTES", 5 * GIB),
        progress_cache_size=_as_int("PROGRESS_CACHE_SIZE", 1024),
    )
