"""Job lifecycle state machine.

Every change to a job's status goes through :class:`JobStateMachine`. Writers
for the same job id are serialized with a per-job ``asyncio.Lock``, and each
accepted change is published to the owner's realtime channels while the lock
is still held, so a job's events leave in the order they were applied.

Cancellation wins: once a job is ``failed``, progress reported by a phase
that is still running is dropped instead of resurrecting the job.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from pathlib import Path
from typing import Any

from yt_relay.db.jobs import JobsRepository
from yt_relay.errors import InvalidTransitionError, JobNotFoundError
from yt_relay.services.broadcaster import Broadcaster, job_deleted_event, job_update_event
from yt_relay.services.downloader import remove_artifacts
from yt_relay.services.progress import LiveProgressCache
from yt_relay.types import ACTIVE_STATUSES, CANCELLED_MESSAGE, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "queued": frozenset({"queued", "downloading", "failed"}),
    "downloading": frozenset({"downloading", "converting", "uploading", "completed", "failed"}),
    "converting": frozenset({"converting", "uploading", "completed", "failed"}),
    "uploading": frozenset({"uploading", "completed", "failed"}),
    "completed": frozenset({"completed", "uploading"}),
    "failed": frozenset(),
}

_RESET_FIELDS: dict[str, Any] = {
    "progress": 0,
    "error": None,
    "file_path": None,
    "file_size": None,
    "uploaded_to_remote": False,
}


class JobStateMachine:
    def __init__(
        self,
        *,
        jobs: JobsRepository,
        broadcaster: Broadcaster,
        progress_cache: LiveProgressCache,
        downloads_dir: Path,
    ) -> None:
        self.jobs = jobs
        self.broadcaster = broadcaster
        self.progress_cache = progress_cache
        self.downloads_dir = downloads_dir
        # Entries vanish once no coroutine holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        return lock

    async def transition(
        self,
        job_id: str,
        status: str,
        progress: int,
        error_message: str | None = None,
        *,
        speed: str | None = None,
        eta: str | None = None,
        **fields: Any,
    ) -> dict[str, Any] | None:
        """Apply a status change and return the stored job.

        Returns None, without writing anything, when the job is gone or has
        already failed. Within one status the stored progress never goes
        down; a lower value is raised to the current one.
        """
        async with self._lock(job_id):
            job = self.jobs.get(job_id)
            if job is None:
                logger.debug("Dropping %s update for deleted job %s", status, job_id)
                return None
            if job["status"] == "failed":
                logger.debug("Dropping %s update for failed job %s", status, job_id)
                return None
            if status not in ALLOWED_TRANSITIONS[job["status"]]:
                raise InvalidTransitionError(f"Cannot move job {job_id} from {job['status']} to {status}")

            progress = max(0, min(int(progress), 100))
            if status == job["status"]:
                progress = max(progress, int(job["progress"]))

            changes: dict[str, Any] = {"status": status, "progress": progress, "error": error_message, **fields}
            if all(job.get(column) == value for column, value in changes.items()):
                return job

            updated = self.jobs.update(job_id, **changes)
            if updated is None:
                return None

            if status in TERMINAL_STATUSES:
                self.progress_cache.discard(job_id)
            elif speed is not None or eta is not None:
                self.progress_cache.set(job_id, speed, eta)

            await self.broadcaster.publish(updated["user_id"], job_update_event(updated, speed=speed, eta=eta))
            return updated

    async def cancel(self, job_id: str) -> dict[str, Any]:
        async with self._lock(job_id):
            job = self.jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job["status"] == "failed":
                return job
            if job["status"] == "completed":
                raise InvalidTransitionError(f"Job {job_id} is already completed")

            updated = self.jobs.update(job_id, status="failed", error=CANCELLED_MESSAGE)
            if updated is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            self.progress_cache.discard(job_id)
            logger.info("Job %s cancelled by user", job_id)
            await self.broadcaster.publish(updated["user_id"], job_update_event(updated))
            return updated

    async def retry(self, job_id: str) -> dict[str, Any]:
        """Reset a failed job to ``queued``; the caller restarts its pipeline."""
        async with self._lock(job_id):
            job = self.jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job["status"] != "failed":
                raise InvalidTransitionError(f"Only failed jobs can be retried (job {job_id} is {job['status']})")

            remove_artifacts(self.downloads_dir, job_id, job.get("file_path"))
            updated = self.jobs.update(job_id, status="queued", **_RESET_FIELDS)
            if updated is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            logger.info("Job %s re-queued", job_id)
            await self.broadcaster.publish(updated["user_id"], job_update_event(updated))
            return updated

    async def delete(self, job_id: str, *, force: bool = False) -> dict[str, Any]:
        """Remove the job and its local files; active jobs need ``force``."""
        async with self._lock(job_id):
            job = self.jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job["status"] in ACTIVE_STATUSES and not force:
                raise InvalidTransitionError(f"Job {job_id} is still {job['status']}; cancel it first")

            removed = remove_artifacts(self.downloads_dir, job_id, job.get("file_path"))
            self.jobs.delete(job_id)
            self.progress_cache.discard(job_id)
            logger.info("Deleted job %s (%d local file(s) removed)", job_id, len(removed))
            await self.broadcaster.publish(job["user_id"], job_deleted_event(job_id))

        return job
