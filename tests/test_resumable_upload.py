import asyncio
import base64
import math
from pathlib import Path

import httpx
import pytest
from conftest import FakeResumableServer, write_sparse_file

from yt_relay.errors import ProtocolError
from yt_relay.services.resumable_upload import (
    ResumableUploadClient,
    format_eta,
    format_speed,
    normalize_endpoint,
    resolve_location,
    upload_percent,
)
from yt_relay.types import UploadProgress

MIB = 1024 * 1024


def test_normalize_endpoint() -> None:
    assert normalize_endpoint("https://nas.example.com") == "https://nas.example.com/files/"
    assert normalize_endpoint(" https://nas.example.com/ ") == "https://nas.example.com/files/"
    assert normalize_endpoint("https://nas.example.com/files") == "https://nas.example.com/files/"
    assert normalize_endpoint("https://nas.example.com/files/") == "https://nas.example.com/files/"


def test_resolve_location() -> None:
    endpoint = "https://nas.example.com/files/"
    assert resolve_location(endpoint, "/files/abc") == "https://nas.example.com/files/abc"
    assert resolve_location(endpoint, "abc") == "https://nas.example.com/files/abc"
    assert resolve_location(endpoint, "http://nas.example.com/files/abc") == "https://nas.example.com/files/abc"
    assert resolve_location(endpoint, "https://other.example.com/u/1") == "https://other.example.com/u/1"


def test_speed_and_eta_labels() -> None:
    assert format_speed(2.5 * MIB) == "2.5MiB/s"
    assert format_speed(512 * 1024) == "512KiB/s"
    assert format_eta(5) == "0:05"
    assert format_eta(60) == "1:00"
    assert format_eta(125.4) == "2:05"


def test_upload_percent_reserves_one_hundred() -> None:
    assert upload_percent(0, 100) == 0
    assert upload_percent(50, 100) == 49
    assert upload_percent(100, 100) == 99
    assert upload_percent(0, 0) == 0


def test_upload_sends_create_then_chunks(tmp_path: Path) -> None:
    server = FakeResumableServer()
    source = tmp_path / "clip.mp4"
    source.write_bytes(bytes(range(256)) * (12 * MIB // 256))
    seen: list[UploadProgress] = []

    async def on_progress(update: UploadProgress) -> None:
        seen.append(update)

    result = asyncio.run(server.client().upload(source, "Clip ü.mp4", on_progress))

    create = server.requests[0]
    assert create.method == "POST"
    assert str(create.url) == "https://nas.example.com/files/"
    assert create.headers["Protocol-Resumable"] == "1.0.0"
    assert create.headers["Upload-Length"] == str(12 * MIB)
    assert create.headers["Upload-Metadata"] == "filename " + base64.b64encode("Clip ü.mp4".encode()).decode()

    assert [int(p.headers["Upload-Offset"]) for p in server.patches] == [0, 5 * MIB, 10 * MIB]
    for patch in server.patches:
        assert str(patch.url) == "https://nas.example.com/files/abc"
        assert patch.headers["Content-Type"] == "application/offset+octet-stream"
        assert patch.headers["Protocol-Resumable"] == "1.0.0"
    assert bytes(server.received) == source.read_bytes()

    assert result.chunks == 3
    assert result.offset == 12 * MIB
    assert [update.progress for update in seen] == [41, 82, 99]
    assert all(update.eta is not None for update in seen)


@pytest.mark.parametrize("size, chunk_size", [(1, 4), (16, 4), (17, 4)])
def test_patch_count_is_ceil_of_size_over_chunk(tmp_path: Path, size: int, chunk_size: int) -> None:
    server = FakeResumableServer()
    source = write_sparse_file(tmp_path / "data.bin", size)

    result = asyncio.run(server.client(chunk_size=chunk_size).upload(source, "data.bin"))

    assert len(server.patches) == math.ceil(size / chunk_size)
    assert result.offset == size


def test_create_failure_surfaces_status(tmp_path: Path) -> None:
    server = FakeResumableServer(create_status=500)
    source = write_sparse_file(tmp_path / "clip.mp4", 1024)

    with pytest.raises(ProtocolError, match="HTTP 500") as excinfo:
        asyncio.run(server.client().upload(source, "clip.mp4"))

    assert excinfo.value.status_code == 500
    assert excinfo.value.detail == "boom"
    assert server.patches == []


def test_missing_location_is_a_protocol_error(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(201)

    client = ResumableUploadClient("https://nas.example.com", transport=httpx.MockTransport(handler))
    source = write_sparse_file(tmp_path / "clip.mp4", 10)

    with pytest.raises(ProtocolError, match="location"):
        asyncio.run(client.upload(source, "clip.mp4"))


def test_rejected_chunk_aborts_without_restarting(tmp_path: Path) -> None:
    server = FakeResumableServer(fail_patch_at=1)
    source = write_sparse_file(tmp_path / "clip.mp4", 10)

    with pytest.raises(ProtocolError, match="HTTP 409"):
        asyncio.run(server.client(chunk_size=4).upload(source, "clip.mp4"))

    assert len(server.patches) == 2
    assert len(server.received) == 4
    assert [request.method for request in server.requests].count("POST") == 1


def test_offset_follows_server_acknowledgement(tmp_path: Path) -> None:
    offsets: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, headers={"Location": "https://nas.example.com/files/x"})
        offset = int(request.headers["Upload-Offset"])
        offsets.append(offset)
        # Server only keeps half of the first chunk.
        acknowledged = offset + (2 if offset == 0 else len(request.content))
        return httpx.Response(200, headers={"Upload-Offset": str(acknowledged)})

    client = ResumableUploadClient("https://nas.example.com", chunk_size=4, transport=httpx.MockTransport(handler))
    source = write_sparse_file(tmp_path / "clip.mp4", 8)

    result = asyncio.run(client.upload(source, "clip.mp4"))

    assert offsets == [0, 2, 6]
    assert result.offset == 8


def test_malformed_offset_header_is_a_protocol_error(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, headers={"Location": "/files/x"})
        return httpx.Response(204, headers={"Upload-Offset": "garbage"})

    client = ResumableUploadClient("https://nas.example.com", chunk_size=4, transport=httpx.MockTransport(handler))
    source = write_sparse_file(tmp_path / "clip.mp4", 8)

    with pytest.raises(ProtocolError, match="Invalid Upload-Offset header 'garbage'") as excinfo:
        asyncio.run(client.upload(source, "clip.mp4"))

    assert excinfo.value.status_code == 204


def test_connection_self_test_uploads_and_deletes() -> None:
    server = FakeResumableServer()

    result = asyncio.run(server.client().test_connection())

    assert result.success is True
    assert result.message == "Connection successful"
    assert server.length == MIB
    assert len(server.patches) == 1
    assert server.requests[-1].method == "DELETE"
    assert "test-connection-" in (result.details or "")


def test_connection_self_test_ignores_failed_delete() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, headers={"Location": "/files/t"})
        if request.method == "PATCH":
            return httpx.Response(204, headers={"Upload-Offset": str(MIB)})
        raise httpx.ConnectError("delete not supported", request=request)

    client = ResumableUploadClient("https://nas.example.com", transport=httpx.MockTransport(handler))
    result = asyncio.run(client.test_connection())

    assert result.success is True


def test_connection_self_test_detects_non_protocol_server() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="not found")

    client = ResumableUploadClient("https://nas.example.com", transport=httpx.MockTransport(handler))
    result = asyncio.run(client.test_connection())

    assert result.success is False
    assert "does not support" in result.message


def test_connection_self_test_reports_unreachable_server() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = ResumableUploadClient("https://nas.example.com", transport=httpx.MockTransport(handler))
    result = asyncio.run(client.test_connection())

    assert result.success is False
    assert "Cannot connect" in result.message
