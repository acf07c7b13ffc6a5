from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx
import pytest

from yt_relay.db.database import Database
from yt_relay.db.jobs import JobsRepository
from yt_relay.db.user_settings import UserSettingsRepository
from yt_relay.services.broadcaster import Broadcaster
from yt_relay.services.progress import LiveProgressCache
from yt_relay.services.resumable_upload import ResumableUploadClient
from yt_relay.state_machine import JobStateMachine


class RecordingChannel:
    def __init__(self) -> None:
        self.messages: list[str] = []

    async def send_text(self, data: str) -> None:
        self.messages.append(data)


class BrokenChannel:
    async def send_text(self, data: str) -> None:
        raise ConnectionError("socket closed")


@pytest.fixture
def db(tmp_path: Path) -> Database:
    database = Database(tmp_path / "test.sqlite3")
    yield database
    database.close()


@pytest.fixture
def jobs(db: Database) -> JobsRepository:
    return JobsRepository(db)


@pytest.fixture
def user_settings(db: Database) -> UserSettingsRepository:
    return UserSettingsRepository(db)


@pytest.fixture
def downloads_dir(tmp_path: Path) -> Path:
    path = tmp_path / "downloads"
    path.mkdir()
    return path


@pytest.fixture
def broadcaster() -> Broadcaster:
    return Broadcaster()


@pytest.fixture
def progress_cache() -> LiveProgressCache:
    return LiveProgressCache(max_entries=16)


@pytest.fixture
def state_machine(
    jobs: JobsRepository,
    broadcaster: Broadcaster,
    progress_cache: LiveProgressCache,
    downloads_dir: Path,
) -> JobStateMachine:
    return JobStateMachine(
        jobs=jobs,
        broadcaster=broadcaster,
        progress_cache=progress_cache,
        downloads_dir=downloads_dir,
    )


@pytest.fixture
def make_job(jobs: JobsRepository):
    def _make(user_id: str = "user-1", **overrides: Any) -> dict[str, Any]:
        job = jobs.create(
            user_id=user_id,
            url="https://www.youtube.com/watch?v=abc123",
            kind=overrides.pop("kind", "video"),
            quality=overrides.pop("quality", "720p"),
            title=overrides.pop("title", "Demo title"),
        )
        if overrides:
            job = jobs.update(str(job["id"]), **overrides)
        return job

    return _make


class FakeResumableServer:
    """In-memory server speaking the create/patch protocol."""

    def __init__(self, *, create_status: int = 201, location: str = "/files/abc", fail_patch_at: int | None = None) -> None:
        self.create_status = create_status
        self.location = location
        self.fail_patch_at = fail_patch_at
        self.requests: list[httpx.Request] = []
        self.received = bytearray()
        self.length: int | None = None

    @property
    def patches(self) -> list[httpx.Request]:
        return [request for request in self.requests if request.method == "PATCH"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        protocol = {"Protocol-Resumable": "1.0.0"}
        if request.method == "POST":
            if self.create_status != 201:
                return httpx.Response(self.create_status, headers=protocol, text="boom")
            self.length = int(request.headers["Upload-Length"])
            return httpx.Response(201, headers={**protocol, "Location": self.location})
        if request.method == "PATCH":
            if self.fail_patch_at is not None and len(self.patches) - 1 == self.fail_patch_at:
                return httpx.Response(409, headers=protocol, text="offset mismatch")
            assert int(request.headers["Upload-Offset"]) == len(self.received)
            self.received.extend(request.content)
            return httpx.Response(204, headers={**protocol, "Upload-Offset": str(len(self.received))})
        if request.method == "DELETE":
            return httpx.Response(204, headers=protocol)
        return httpx.Response(405)

    def client(self, endpoint: str = "https://nas.example.com", chunk_size: int = 5 * 1024 * 1024) -> ResumableUploadClient:
        return ResumableUploadClient(endpoint, chunk_size=chunk_size, transport=httpx.MockTransport(self.handler))


def write_sparse_file(path: Path, size: int) -> Path:
    with path.open("wb") as handle:
        handle.truncate(size)
    return path
