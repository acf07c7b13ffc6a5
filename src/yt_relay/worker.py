from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Protocol

from yt_relay.db.jobs import JobsRepository
from yt_relay.db.user_settings import SETTINGS_COLUMNS, UserSettingsRepository
from yt_relay.errors import (
    InvalidTransitionError,
    JobCancelledError,
    JobNotFoundError,
    ProtocolError,
    ResourceError,
    ValidationError,
)
from yt_relay.services.downloader import Fetcher, save_cookies
from yt_relay.services.reclaim import DiskReclaimer
from yt_relay.services.resumable_upload import ResumableUploadClient, UploadProgressCallback
from yt_relay.state_machine import JobStateMachine
from yt_relay.types import (
    PROXY_TYPES,
    ConnectionTestResult,
    FetchRequest,
    FetchResult,
    ProgressUpdate,
    UploadProgress,
    UploadResult,
)
from yt_relay.utils.naming import remote_filename, sanitize_path_component
from yt_relay.utils.url import is_http_url, validate_submission

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000
INTERRUPTED_MESSAGE = "Interrupted by server restart"


class Uploader(Protocol):
    async def upload(
        self,
        file_path: Path,
        filename: str,
        on_progress: UploadProgressCallback | None = None,
    ) -> UploadResult: ...

    async def test_connection(self) -> ConnectionTestResult: ...


UploaderFactory = Callable[[str], Uploader]


class JobOrchestrator:
    """Runs each job as its own asyncio task: reclaim, fetch, optional upload, complete.

    A failure at any stage moves the job to ``failed`` with that stage's
    message and nothing after it runs.
    """

    def __init__(
        self,
        *,
        jobs: JobsRepository,
        user_settings: UserSettingsRepository,
        state_machine: JobStateMachine,
        fetcher: Fetcher,
        reclaimer: DiskReclaimer,
        uploader_factory: UploaderFactory = ResumableUploadClient,
        cookies_dir: Path,
    ) -> None:
        self.jobs = jobs
        self.user_settings = user_settings
        self.state_machine = state_machine
        self.fetcher = fetcher
        self.reclaimer = reclaimer
        self.uploader_factory = uploader_factory
        self.cookies_dir = cookies_dir
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def active_jobs(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def cookies_path(self, user_id: str) -> Path:
        return self.cookies_dir / f"{sanitize_path_component(user_id, 'user')}.txt"

    # Queries

    def list_jobs(self, user_id: str) -> list[dict[str, Any]]:
        return self.jobs.list_by_user(user_id)

    def get_job(self, user_id: str, job_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None or job["user_id"] != user_id:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    # Commands

    async def submit(self, user_id: str, url: str, kind: str, quality: str | None = None) -> dict[str, Any]:
        validate_submission(url, kind, quality)
        info = await self.fetcher.probe(
            url,
            proxy=self.user_settings.proxy_config(user_id),
            cookies_path=self._existing_cookies(user_id),
        )
        job = self.jobs.create(
            user_id=user_id,
            url=url.strip(),
            kind=kind,
            quality=(quality or None) if kind == "video" else None,
            title=info.title,
            thumbnail=info.thumbnail,
        )
        logger.info("Created job %s for user %s (%s)", job["id"], user_id, kind)
        self.start(job["id"])
        return job

    async def cancel(self, user_id: str, job_id: str) -> dict[str, Any]:
        self.get_job(user_id, job_id)
        return await self.state_machine.cancel(job_id)

    async def retry(self, user_id: str, job_id: str) -> dict[str, Any]:
        self.get_job(user_id, job_id)
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            raise InvalidTransitionError(f"Job {job_id} is still shutting down, retry shortly")
        job = await self.state_machine.retry(job_id)
        self.start(job_id)
        return job

    async def delete(self, user_id: str, job_id: str) -> dict[str, Any]:
        self.get_job(user_id, job_id)
        return await self.state_machine.delete(job_id)

    async def upload(self, user_id: str, job_id: str) -> dict[str, Any]:
        """Relay an already completed job to the user's remote endpoint in the background."""
        job = self.get_job(user_id, job_id)
        if job["status"] != "completed":
            raise InvalidTransitionError("Job is not completed yet")
        if job["uploaded_to_remote"]:
            raise InvalidTransitionError("Already uploaded to the remote endpoint")
        endpoint = self._remote_endpoint(user_id, require_auto_upload=False)
        if endpoint is None:
            raise ValidationError("Remote endpoint not configured")
        file_path = job.get("file_path")
        if not file_path or not Path(file_path).is_file():
            raise ValidationError("Downloaded file not found on server")
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            raise InvalidTransitionError(f"Job {job_id} already has work in flight")

        self._spawn(job_id, self._run_upload_only(job_id, endpoint))
        return job

    async def test_remote_connection(self, user_id: str) -> ConnectionTestResult:
        endpoint = self._remote_endpoint(user_id, require_auto_upload=False)
        if endpoint is None:
            return ConnectionTestResult(success=False, message="Remote endpoint not configured")
        return await self.uploader_factory(endpoint).test_connection()

    def update_settings(self, user_id: str, **changes: Any) -> dict[str, Any]:
        unknown = set(changes) - set(SETTINGS_COLUMNS)
        if unknown:
            raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")

        if "remote_endpoint" in changes:
            endpoint = (changes["remote_endpoint"] or "").strip()
            if endpoint and not is_http_url(endpoint):
                raise ValidationError("Remote endpoint must be an http(s) URL")
            changes["remote_endpoint"] = endpoint or None
        if "proxy_type" in changes and changes["proxy_type"] not in PROXY_TYPES:
            raise ValidationError(f"Proxy type must be one of: {', '.join(PROXY_TYPES)}")
        if changes.get("proxy_port") is not None:
            port = int(changes["proxy_port"])
            if not 1 <= port <= 65535:
                raise ValidationError("Proxy port must be between 1 and 65535")
            changes["proxy_port"] = port

        cookies = changes.get("cookies")
        if cookies and cookies.strip():
            save_cookies(self.cookies_path(user_id), cookies)

        return self.user_settings.upsert(user_id, **changes)

    # Task management

    def start(self, job_id: str) -> asyncio.Task[None]:
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            return task
        return self._spawn(job_id, self._run(job_id))

    def _spawn(self, job_id: str, coro: Any) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro, name=f"job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda done: self._forget(job_id, done))
        return task

    def _forget(self, job_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]

    async def wait(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    async def recover_interrupted(self) -> int:
        """Fail jobs left active by a previous process so they can be retried."""
        count = 0
        for job in self.jobs.list_active():
            if str(job["id"]) in self._tasks:
                continue
            if await self.state_machine.transition(str(job["id"]), "failed", 0, INTERRUPTED_MESSAGE) is not None:
                count += 1
        if count:
            logger.info("Marked %d interrupted job(s) as failed", count)
        return count

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # Pipeline

    async def _run(self, job_id: str) -> None:
        job = self.jobs.get(job_id)
        if job is None:
            return
        user_id = str(job["user_id"])

        try:
            logger.info("Processing job %s", job_id)
            try:
                self.reclaimer.reclaim(user_id)
            except ResourceError as exc:
                logger.warning("Disk reclamation for job %s incomplete: %s", job_id, exc)

            if await self.state_machine.transition(job_id, "downloading", 0) is None:
                raise JobCancelledError(f"Job {job_id} was cancelled before it started")

            result = await self.fetcher.fetch(
                FetchRequest(
                    job_id=job_id,
                    url=str(job["url"]),
                    kind=job["kind"],
                    quality=job.get("quality"),
                    proxy=self.user_settings.proxy_config(user_id),
                    cookies_path=self._existing_cookies(user_id),
                ),
                self._fetch_progress(job_id),
            )
            logger.info("Fetch completed for job %s: %s (%d bytes)", job_id, result.file_path, result.file_size)

            endpoint = self._remote_endpoint(user_id, require_auto_upload=True)
            if endpoint is None:
                await self._complete(job_id, file_path=result.file_path, file_size=result.file_size)
            else:
                logger.info("Auto-uploading job %s", job_id)
                await self._upload_phase(job, endpoint, result)
            logger.info("Completed job %s", job_id)
        except JobCancelledError as exc:
            logger.info("Stopped job %s: %s", job_id, exc)
        except Exception as exc:  # pylint: disable=broad-except
            await self._fail(job_id, exc)

    async def _run_upload_only(self, job_id: str, endpoint: str) -> None:
        job = self.jobs.get(job_id)
        if job is None:
            return
        try:
            result = FetchResult(file_path=str(job["file_path"]), file_size=int(job["file_size"] or 0))
            await self._upload_phase(job, endpoint, result)
            logger.info("Manual upload completed for job %s", job_id)
        except JobCancelledError as exc:
            logger.info("Stopped upload of job %s: %s", job_id, exc)
        except Exception as exc:  # pylint: disable=broad-except
            await self._fail(job_id, exc)

    async def _upload_phase(self, job: dict[str, Any], endpoint: str, result: FetchResult) -> None:
        job_id = str(job["id"])
        started = await self.state_machine.transition(
            job_id,
            "uploading",
            0,
            file_path=result.file_path,
            file_size=result.file_size,
        )
        if started is None:
            raise JobCancelledError(f"Job {job_id} was cancelled before upload")

        file_path = Path(result.file_path)
        uploader = self.uploader_factory(endpoint)
        try:
            await uploader.upload(file_path, remote_filename(job.get("title"), job["kind"]), self._upload_progress(job_id))
        except ProtocolError as exc:
            raise ProtocolError(f"Upload failed: {exc}", status_code=exc.status_code, detail=exc.detail) from exc

        try:
            file_path.unlink(missing_ok=True)
            logger.info("Deleted local file after upload: %s", file_path)
        except OSError as exc:
            logger.error("Failed to delete local file %s: %s", file_path, exc)

        await self._complete(job_id, uploaded_to_remote=True)

    async def _complete(self, job_id: str, **fields: Any) -> None:
        if await self.state_machine.transition(job_id, "completed", 100, **fields) is None:
            raise JobCancelledError(f"Job {job_id} was cancelled before completion")

    async def _fail(self, job_id: str, exc: Exception) -> None:
        message = str(exc).strip() or "Unknown worker error"
        logger.exception("Job %s failed: %s", job_id, message)
        await self.state_machine.transition(job_id, "failed", 0, message[:MAX_ERROR_LENGTH])

    def _fetch_progress(self, job_id: str) -> Callable[[ProgressUpdate], Any]:
        async def on_progress(update: ProgressUpdate) -> None:
            applied = await self.state_machine.transition(
                job_id,
                update.status,
                update.progress,
                speed=update.speed,
                eta=update.eta,
            )
            if applied is None:
                raise JobCancelledError(f"Job {job_id} was cancelled during fetch")

        return on_progress

    def _upload_progress(self, job_id: str) -> UploadProgressCallback:
        async def on_progress(update: UploadProgress) -> None:
            applied = await self.state_machine.transition(
                job_id,
                "uploading",
                update.progress,
                speed=update.speed,
                eta=update.eta,
            )
            if applied is None:
                raise JobCancelledError(f"Job {job_id} was cancelled during upload")

        return on_progress

    # Helpers

    def _remote_endpoint(self, user_id: str, *, require_auto_upload: bool) -> str | None:
        settings = self.user_settings.get(user_id)
        if settings is None or not settings.get("remote_endpoint"):
            return None
        if require_auto_upload and not settings.get("auto_upload"):
            return None
        return str(settings["remote_endpoint"])

    def _existing_cookies(self, user_id: str) -> str | None:
        path = self.cookies_path(user_id)
        return str(path) if path.is_file() else None
