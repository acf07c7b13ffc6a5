from __future__ import annotations

import asyncio
import base64
import logging
import math
import time
from pathlib import Path
from typing import Awaitable, BinaryIO, Callable
from urllib.parse import urljoin

import httpx

from yt_relay.errors import ProtocolError
from yt_relay.types import ConnectionTestResult, UploadProgress, UploadResult

logger = logging.getLogger(__name__)

PROTOCOL_HEADER = "Protocol-Resumable"
PROTOCOL_VERSION = "1.0.0"
OFFSET_CONTENT_TYPE = "application/offset+octet-stream"
DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024
TEST_FILE_SIZE = 1024 * 1024
APPLIED_STATUSES = (200, 204)

UploadProgressCallback = Callable[[UploadProgress], Awaitable[None]]


def normalize_endpoint(endpoint: str) -> str:
    base = endpoint.strip().rstrip("/")
    if base.endswith("/files"):
        return base + "/"
    return base + "/files/"


def resolve_location(endpoint: str, location: str) -> str:
    if location.startswith("http://"):
        return "https://" + location[len("http://"):]
    if location.startswith("https://"):
        return location
    return urljoin(endpoint, location)


def encode_metadata(filename: str) -> str:
    return "filename " + base64.b64encode(filename.encode("utf-8")).decode("ascii")


def format_speed(bytes_per_second: float) -> str:
    if bytes_per_second >= 1024 * 1024:
        return f"{bytes_per_second / (1024 * 1024):.1f}MiB/s"
    return f"{bytes_per_second / 1024:.0f}KiB/s"


def format_eta(seconds: float) -> str:
    minutes, secs = divmod(max(int(round(seconds)), 0), 60)
    return f"{minutes}:{secs:02d}"


def upload_percent(offset: int, total: int) -> int:
    """Share of the upload done, capped at 99 so 100 only ever means completed."""
    if total <= 0:
        return 0
    return min(math.floor(offset / total * 99), 99)


def _read_chunk(stream: BinaryIO, offset: int, size: int) -> bytes:
    stream.seek(offset)
    return stream.read(size)


class ResumableUploadClient:
    def __init__(
        self,
        endpoint: str,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = normalize_endpoint(endpoint)
        self.chunk_size = chunk_size
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_seconds,
            transport=self._transport,
            headers={PROTOCOL_HEADER: PROTOCOL_VERSION},
        )

    async def _create(self, client: httpx.AsyncClient, length: int, filename: str) -> str:
        try:
            response = await client.post(
                self.endpoint,
                headers={
                    "Upload-Length": str(length),
                    "Upload-Metadata": encode_metadata(filename),
                },
            )
        except httpx.HTTPError as exc:
            raise ProtocolError(f"Cannot connect to upload server: {exc}") from exc

        if response.status_code != 201:
            detail = response.text[:400] or response.reason_phrase
            raise ProtocolError(
                f"Upload initialization failed (HTTP {response.status_code}): {detail}",
                status_code=response.status_code,
                detail=detail,
            )

        location = response.headers.get("Location")
        if not location:
            raise ProtocolError("Server did not return upload location", status_code=response.status_code)
        return resolve_location(self.endpoint, location)

    async def _patch(self, client: httpx.AsyncClient, location: str, offset: int, chunk: bytes) -> httpx.Response:
        try:
            response = await client.patch(
                location,
                headers={
                    "Upload-Offset": str(offset),
                    "Content-Type": OFFSET_CONTENT_TYPE,
                },
                content=chunk,
            )
        except httpx.HTTPError as exc:
            raise ProtocolError(f"Chunk transfer failed at offset {offset}: {exc}") from exc

        if response.status_code not in APPLIED_STATUSES:
            detail = response.text[:400] or response.reason_phrase
            raise ProtocolError(
                f"Chunk transfer failed (HTTP {response.status_code}) at offset {offset}",
                status_code=response.status_code,
                detail=detail,
            )
        return response

    async def upload(
        self,
        file_path: Path,
        filename: str,
        on_progress: UploadProgressCallback | None = None,
    ) -> UploadResult:
        total = file_path.stat().st_size
        logger.info("Uploading %s as %r (%d bytes) to %s", file_path, filename, total, self.endpoint)

        async with self._client() as client:
            location = await self._create(client, total, filename)
            offset = 0
            chunks = 0
            with file_path.open("rb") as stream:
                while offset < total:
                    chunk = await asyncio.to_thread(_read_chunk, stream, offset, min(self.chunk_size, total - offset))
                    if not chunk:
                        raise ProtocolError(f"Local file ended at offset {offset} of {total}")

                    started = time.monotonic()
                    response = await self._patch(client, location, offset, chunk)
                    elapsed = time.monotonic() - started
                    chunks += 1

                    acknowledged = response.headers.get("Upload-Offset")
                    try:
                        new_offset = int(acknowledged) if acknowledged else offset + len(chunk)
                    except ValueError as exc:
                        raise ProtocolError(
                            f"Invalid Upload-Offset header {acknowledged!r}",
                            status_code=response.status_code,
                        ) from exc
                    if new_offset <= offset:
                        raise ProtocolError(f"Server did not advance upload offset past {offset}")
                    offset = new_offset

                    speed = format_speed(len(chunk) / elapsed) if elapsed > 0 else None
                    eta = format_eta((total - offset) / (len(chunk) / max(elapsed, 0.1)))
                    progress = upload_percent(offset, total)
                    logger.debug("Upload progress: %d/%d (%d%%) @ %s", offset, total, progress, speed)
                    if on_progress is not None:
                        await on_progress(
                            UploadProgress(offset=offset, total=total, progress=progress, speed=speed, eta=eta)
                        )

        logger.info("Upload of %r finished after %d chunks", filename, chunks)
        return UploadResult(location=location, offset=offset, chunks=chunks)

    async def test_connection(self) -> ConnectionTestResult:
        filename = f"test-connection-{int(time.time() * 1000)}.bin"
        payload = bytes(TEST_FILE_SIZE)

        async with self._client() as client:
            try:
                response = await client.post(
                    self.endpoint,
                    headers={
                        "Upload-Length": str(TEST_FILE_SIZE),
                        "Upload-Metadata": encode_metadata(filename),
                    },
                )
            except httpx.HTTPError as exc:
                return ConnectionTestResult(
                    success=False,
                    message=f"Cannot connect to upload server: {exc}",
                    details="Check if the server URL is correct and reachable",
                )

            if response.status_code != 201:
                if PROTOCOL_HEADER not in response.headers:
                    return ConnectionTestResult(
                        success=False,
                        message="Server does not support the resumable upload protocol",
                        details=f"HTTP {response.status_code}: no {PROTOCOL_HEADER} header in response",
                    )
                return ConnectionTestResult(
                    success=False,
                    message=f"Upload initialization failed (HTTP {response.status_code})",
                    details=response.text[:400] or response.reason_phrase,
                )

            location = response.headers.get("Location")
            if not location:
                return ConnectionTestResult(
                    success=False,
                    message="Server did not return upload location",
                    details="The server must answer with a Location header",
                )
            location = resolve_location(self.endpoint, location)

            try:
                patch = await self._patch(client, location, 0, payload)
            except ProtocolError as exc:
                return ConnectionTestResult(success=False, message=str(exc), details=exc.detail)

            complete = patch.headers.get("Upload-Offset") == str(TEST_FILE_SIZE)

            # DELETE is an optional protocol extension.
            try:
                await client.delete(location)
            except httpx.HTTPError:
                logger.debug("Remote test object %s could not be deleted", location)

        return ConnectionTestResult(
            success=True,
            message="Connection successful",
            details=f"Test file uploaded (1MB): {filename}{' (verified)' if complete else ''}",
        )
