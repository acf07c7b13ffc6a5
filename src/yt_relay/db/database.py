from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class Database:
    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._initialize()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> Lock:
        return self._lock

    def _initialize(self) -> None:
        with self._lock:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA foreign_keys=ON")

            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  url TEXT NOT NULL,
                  title TEXT,
                  thumbnail TEXT,
                  kind TEXT NOT NULL,
                  quality TEXT,
                  status TEXT NOT NULL DEFAULT 'queued',
                  progress INTEGER NOT NULL DEFAULT 0,
                  error TEXT,
                  file_path TEXT,
                  file_size INTEGER,
                  uploaded_to_remote INTEGER NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_jobs_user_created_at
                ON jobs(user_id, created_at);

                CREATE TABLE IF NOT EXISTS user_settings (
                  user_id TEXT PRIMARY KEY,
                  remote_endpoint TEXT,
                  auto_upload INTEGER NOT NULL DEFAULT 1,
                  proxy_enabled INTEGER NOT NULL DEFAULT 0,
                  proxy_type TEXT NOT NULL DEFAULT 'http',
                  proxy_host TEXT,
                  proxy_port INTEGER,
                  proxy_username TEXT,
                  proxy_password TEXT,
                  cookies TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()
