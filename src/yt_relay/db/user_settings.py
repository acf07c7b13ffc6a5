from __future__ import annotations

import sqlite3
from typing import Any

from yt_relay.db.database import Database, utc_now
from yt_relay.types import ProxyConfig

SETTINGS_COLUMNS = (
    "remote_endpoint",
    "auto_upload",
    "proxy_enabled",
    "proxy_type",
    "proxy_host",
    "proxy_port",
    "proxy_username",
    "proxy_password",
    "cookies",
)
_FLAG_COLUMNS = ("auto_upload", "proxy_enabled")


def _row_to_settings(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    settings = dict(row)
    for column in _FLAG_COLUMNS:
        settings[column] = bool(settings[column])
    return settings


class UserSettingsRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    def get(self, user_id: str) -> dict[str, Any] | None:
        row = self.db.conn.execute(
            "SELECT * FROM user_settings WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return _row_to_settings(row)

    def upsert(self, user_id: str, **fields: Any) -> dict[str, Any]:
        unknown = set(fields) - set(SETTINGS_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown settings columns: {', '.join(sorted(unknown))}")
        for column in _FLAG_COLUMNS:
            if column in fields:
                fields[column] = 1 if fields[column] else 0

        now = utc_now()
        columns = ["user_id", *fields, "created_at", "updated_at"]
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{column} = excluded.{column}" for column in [*fields, "updated_at"])
        with self.db.lock:
            self.db.conn.execute(
                f"""
                INSERT INTO user_settings({", ".join(columns)})
                VALUES ({placeholders})
                ON CONFLICT(user_id) DO UPDATE SET {updates}
                """,
                (user_id, *fields.values(), now, now),
            )
            self.db.conn.commit()

        settings = self.get(user_id)
        if settings is None:
            raise RuntimeError("Failed to save user settings")
        return settings

    def proxy_config(self, user_id: str) -> ProxyConfig | None:
        settings = self.get(user_id)
        if settings is None or not settings["proxy_enabled"]:
            return None
        if not settings["proxy_host"] or not settings["proxy_port"]:
            return None
        return ProxyConfig(
            type=settings["proxy_type"] or "http",
            host=str(settings["proxy_host"]),
            port=int(settings["proxy_port"]),
            username=settings["proxy_username"] or None,
            password=settings["proxy_password"] or None,
        )
