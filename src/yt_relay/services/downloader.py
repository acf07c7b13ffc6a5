from __future__ import annotations

import asyncio
import json
import logging
import re
from collections import deque
from pathlib import Path
from typing import Awaitable, Callable, Protocol
from urllib.parse import quote

from yt_relay.errors import FetchError, ProbeError
from yt_relay.services.progress import ProgressParser
from yt_relay.types import FetchRequest, FetchResult, ProgressUpdate, ProxyConfig, VideoInfo

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], Awaitable[None]]

_QUALITY_RE = re.compile(r"(\d{3,4})")
_STREAM_LIMIT = 1024 * 1024
# Emulated player clients that are less likely to hit the anti-bot wall.
_EXTRACTOR_ARGS = "youtube:player_client=default,mweb"


class Fetcher(Protocol):
    async def probe(
        self,
        url: str,
        *,
        proxy: ProxyConfig | None = None,
        cookies_path: str | None = None,
    ) -> VideoInfo: ...

    async def fetch(self, request: FetchRequest, on_progress: ProgressCallback) -> FetchResult: ...


def build_proxy_url(proxy: ProxyConfig) -> str:
    auth = ""
    if proxy.username:
        auth = quote(proxy.username, safe="")
        if proxy.password:
            auth += ":" + quote(proxy.password, safe="")
        auth += "@"
    return f"{proxy.type}://{auth}{proxy.host}:{proxy.port}"


def artifact_extension(kind: str) -> str:
    return "mp3" if kind == "audio" else "mp4"


def artifact_path(downloads_dir: Path, job_id: str, kind: str) -> Path:
    return downloads_dir / f"{job_id}.{artifact_extension(kind)}"


def save_cookies(cookies_path: Path, cookies: str) -> None:
    cookies_path.parent.mkdir(parents=True, exist_ok=True)
    text = cookies.strip()
    if not text.startswith("# Netscape HTTP Cookie File"):
        text = "# Netscape HTTP Cookie File\n" + text
    cookies_path.write_text(text + "\n", encoding="utf-8")


def format_selector(kind: str, quality: str | None) -> list[str]:
    if kind == "audio":
        return ["-f", "bestaudio/best", "-x", "--audio-format", "mp3", "--audio-quality", "0"]

    match = _QUALITY_RE.search(quality or "")
    if match:
        height = match.group(1)
        selector = f"bestvideo[height<={height}]+bestaudio/best[height<={height}]"
    else:
        selector = "bestvideo+bestaudio/best"
    return ["-f", selector, "--merge-output-format", "mp4", "--remux-video", "mp4"]


class YtDlpFetcher:
    def __init__(
        self,
        downloads_dir: Path,
        *,
        binary: str = "yt-dlp",
        probe_timeout_seconds: float = 30.0,
        fetch_timeout_seconds: float = 3600.0,
    ) -> None:
        self.downloads_dir = downloads_dir
        self.downloads_dir.mkdir(parents=True, exist_ok=True)
        self.binary = binary
        self.probe_timeout_seconds = probe_timeout_seconds
        self.fetch_timeout_seconds = fetch_timeout_seconds

    def _common_options(self, proxy: ProxyConfig | None, cookies_path: str | None) -> list[str]:
        options: list[str] = ["--extractor-args", _EXTRACTOR_ARGS]
        if proxy is not None:
            options += ["--proxy", build_proxy_url(proxy)]
        if cookies_path and Path(cookies_path).exists():
            options += ["--cookies", cookies_path]
        return options

    async def probe(
        self,
        url: str,
        *,
        proxy: ProxyConfig | None = None,
        cookies_path: str | None = None,
    ) -> VideoInfo:
        cmd = [
            self.binary,
            "--dump-json",
            "--no-warnings",
            "--no-download",
            "--no-playlist",
            *self._common_options(proxy, cookies_path),
            url,
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProbeError(f"Cannot start {self.binary}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), self.probe_timeout_seconds)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise ProbeError(f"Metadata lookup timed out after {self.probe_timeout_seconds:g}s") from exc

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip() or "yt-dlp failed"
            raise ProbeError(message)

        try:
            metadata = json.loads(stdout.decode("utf-8", errors="replace"))
        except json.JSONDecodeError as exc:
            raise ProbeError("Could not parse yt-dlp metadata JSON") from exc
        if not isinstance(metadata, dict):
            raise ProbeError("Could not parse yt-dlp metadata JSON")

        duration = metadata.get("duration")
        return VideoInfo(
            title=_as_str(metadata.get("title")),
            thumbnail=_as_str(metadata.get("thumbnail")),
            duration=float(duration) if isinstance(duration, (int, float)) else None,
        )

    async def fetch(self, request: FetchRequest, on_progress: ProgressCallback) -> FetchResult:
        output_template = str(self.downloads_dir / f"{request.job_id}.%(ext)s")
        cmd = [
            self.binary,
            "--newline",
            "--progress",
            "--no-playlist",
            "--no-part",
            "--no-warnings",
            *format_selector(request.kind, request.quality),
            *self._common_options(request.proxy, request.cookies_path),
            "-o",
            output_template,
            request.url,
        ]
        logger.info("Starting fetch for job %s (%s, %s)", request.job_id, request.kind, request.quality or "best")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            raise FetchError(f"Cannot start {self.binary}: {exc}") from exc

        parser = ProgressParser()
        diagnostics: deque[str] = deque(maxlen=20)

        async def pump(stream: asyncio.StreamReader | None) -> None:
            if stream is None:
                return
            async for raw in stream:
                line = raw.decode("utf-8", errors="replace").rstrip()
                if not line:
                    continue
                if line.startswith("ERROR:") or stream is process.stderr:
                    diagnostics.append(line)
                update = parser.feed(line)
                if update is not None:
                    await on_progress(update)

        try:
            await asyncio.wait_for(
                asyncio.gather(pump(process.stdout), pump(process.stderr), process.wait()),
                self.fetch_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            _kill(process)
            await process.wait()
            raise FetchError(f"Download timed out after {self.fetch_timeout_seconds:g}s") from exc
        except BaseException:
            _kill(process)
            raise

        if process.returncode != 0:
            errors = [line for line in diagnostics if line.startswith("ERROR:")]
            message = (errors or list(diagnostics) or [f"yt-dlp exited with code {process.returncode}"])[-1]
            raise FetchError(message)

        path = artifact_path(self.downloads_dir, request.job_id, request.kind)
        if not path.exists():
            candidates = sorted(
                candidate
                for candidate in self.downloads_dir.glob(f"{request.job_id}.*")
                if candidate.is_file()
            )
            if not candidates:
                raise FetchError("Output file was not produced by yt-dlp")
            path = candidates[0]

        return FetchResult(file_path=str(path), file_size=path.stat().st_size)


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass


def _as_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def remove_artifacts(downloads_dir: Path, job_id: str, file_path: str | None = None) -> list[str]:
    """Delete every local file belonging to ``job_id``; failures are logged, not raised."""
    candidates = {path for path in downloads_dir.glob(f"{job_id}.*") if path.is_file()}
    if file_path:
        candidates.add(Path(file_path))

    removed: list[str] = []
    for path in sorted(candidates):
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("Failed to delete local file %s: %s", path, exc)
            continue
        removed.append(str(path))
    return removed
