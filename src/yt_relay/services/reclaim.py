from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Callable, NamedTuple

from yt_relay.db.jobs import JobsRepository
from yt_relay.errors import ResourceError

logger = logging.getLogger(__name__)


class DiskUsage(NamedTuple):
    total: int
    used: int
    free: int


DiskUsageProbe = Callable[[Path], DiskUsage]


def _disk_usage(path: Path) -> DiskUsage:
    usage = shutil.disk_usage(path)
    return DiskUsage(usage.total, usage.used, usage.free)


class DiskReclaimer:
    """Deletes the oldest already-relayed artifacts of a user while free space is low.

    Artifacts of jobs that were never uploaded to the remote endpoint are
    never touched.
    """

    def __init__(
        self,
        jobs: JobsRepository,
        downloads_dir: Path,
        min_free_bytes: int,
        disk_usage: DiskUsageProbe = _disk_usage,
    ) -> None:
        self.jobs = jobs
        self.downloads_dir = downloads_dir
        self.min_free_bytes = min_free_bytes
        self._disk_usage = disk_usage

    def free_bytes(self) -> int:
        self.downloads_dir.mkdir(parents=True, exist_ok=True)
        return self._disk_usage(self.downloads_dir).free

    def reclaim(self, user_id: str) -> list[str]:
        """Free space for ``user_id`` and return the deleted paths.

        Raises ResourceError when the threshold is still not met after every
        eligible artifact is gone.
        """
        free = self.free_bytes()
        if free >= self.min_free_bytes:
            return []

        logger.info(
            "Free space %.2f GB below %.2f GB, reclaiming uploaded artifacts of user %s",
            free / 1024**3,
            self.min_free_bytes / 1024**3,
            user_id,
        )
        deleted: list[str] = []
        for job in self.jobs.uploaded_artifacts(user_id):
            if not job["uploaded_to_remote"]:
                continue
            path = Path(str(job["file_path"]))
            if not path.is_file():
                continue
            try:
                path.unlink()
            except OSError as exc:
                logger.warning("Could not delete %s during reclamation: %s", path, exc)
                continue
            deleted.append(str(path))
            logger.info("Reclaimed %s (job %s)", path, job["id"])

            free = self.free_bytes()
            if free >= self.min_free_bytes:
                return deleted

        raise ResourceError(
            f"Only {free / 1024**3:.2f} GB free after deleting {len(deleted)} uploaded file(s)",
            deleted=deleted,
        )
