from __future__ import annotations

import sqlite3
import uuid
from typing import Any

from yt_relay.db.database import Database, utc_now
from yt_relay.types import ACTIVE_STATUSES

UPDATABLE_COLUMNS = frozenset(
    {
        "title",
        "thumbnail",
        "status",
        "progress",
        "error",
        "file_path",
        "file_size",
        "uploaded_to_remote",
    }
)


def _row_to_job(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    job = dict(row)
    job["uploaded_to_remote"] = bool(job["uploaded_to_remote"])
    return job


class JobsRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    def create(
        self,
        *,
        user_id: str,
        url: str,
        kind: str,
        quality: str | None = None,
        title: str | None = None,
        thumbnail: str | None = None,
    ) -> dict[str, Any]:
        job_id = str(uuid.uuid4())
        now = utc_now()
        with self.db.lock:
            self.db.conn.execute(
                """
                INSERT INTO jobs(id, user_id, url, title, thumbnail, kind, quality,
                                 status, progress, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'queued', 0, ?, ?)
                """,
                (job_id, user_id, url, title, thumbnail, kind, quality, now, now),
            )
            self.db.conn.commit()

        job = self.get(job_id)
        if job is None:
            raise RuntimeError("Failed to create job")
        return job

    def get(self, job_id: str) -> dict[str, Any] | None:
        row = self.db.conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row)

    def list_by_user(self, user_id: str) -> list[dict[str, Any]]:
        rows = self.db.conn.execute(
            "SELECT * FROM jobs WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        ).fetchall()
        return [job for job in map(_row_to_job, rows) if job is not None]

    def update(self, job_id: str, **fields: Any) -> dict[str, Any] | None:
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown job columns: {', '.join(sorted(unknown))}")
        if "uploaded_to_remote" in fields:
            fields["uploaded_to_remote"] = 1 if fields["uploaded_to_remote"] else 0

        assignments = ", ".join(f"{column} = ?" for column in fields)
        params = (*fields.values(), utc_now(), job_id)
        with self.db.lock:
            self.db.conn.execute(
                f"UPDATE jobs SET {assignments}{', ' if assignments else ''}updated_at = ? WHERE id = ?",
                params,
            )
            self.db.conn.commit()
        return self.get(job_id)

    def delete(self, job_id: str) -> bool:
        with self.db.lock:
            cursor = self.db.conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            self.db.conn.commit()
        return cursor.rowcount > 0

    def uploaded_artifacts(self, user_id: str) -> list[dict[str, Any]]:
        """Jobs already relayed to the remote endpoint that still reference a local file, oldest first."""
        rows = self.db.conn.execute(
            """
            SELECT * FROM jobs
            WHERE user_id = ? AND uploaded_to_remote = 1 AND file_path IS NOT NULL
            ORDER BY created_at ASC
            """,
            (user_id,),
        ).fetchall()
        return [job for job in map(_row_to_job, rows) if job is not None]

    def list_active(self) -> list[dict[str, Any]]:
        placeholders = ",".join("?" for _ in ACTIVE_STATUSES)
        rows = self.db.conn.execute(
            f"SELECT * FROM jobs WHERE status IN ({placeholders}) ORDER BY created_at ASC",
            ACTIVE_STATUSES,
        ).fetchall()
        return [job for job in map(_row_to_job, rows) if job is not None]
