from __future__ import annotations

import contextlib
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

CREATE_TABLE_SQL = (
    "CREATE TABLE IF NOT EXISTS streams (\n"
    "  id INTEGER PRIMARY KEY AUTOINCREMENT,\n"
    "  user_id TEXT NOT NULL,\n"
    "  channel_name TEXT NOT NULL,\n"
    "  added_in_channel TEXT NOT NULL,\n"
    "  date TEXT NOT NULL,\n"
    "  custom_message TEXT,\n"
    "  UNIQUE(channel_name, added_in_channel, user_id)\n"
    ");"
)

INDEX_SQLS = [
    "CREATE INDEX IF NOT EXISTS idx_channel_name ON streams(channel_name);",
    "CREATE INDEX IF NOT EXISTS idx_user_id ON streams(user_id);",
    "CREATE INDEX IF NOT EXISTS idx_added_in_channel ON streams(added_in_channel);",
]

INSERT_SQL = (
    "INSERT INTO streams (user_id, channel_name, added_in_channel, date, custom_message) "
    "VALUES (?, ?, ?, ?, ?);"
)


class StorageError(RuntimeError):
    pass


class DuplicateStream(StorageError):
    pass


@dataclass(frozen=True)
class NotificationRecipient:
    destination_channel: str
    owner_user_id: str
    custom_template: str | None = None


@dataclass(frozen=True)
class StreamRecord:
    id: int
    user_id: str
    channel_name: str
    added_in_channel: str
    date: str
    custom_message: str | None


class StreamStore:
    """SQLite-backed desired channel list and per-destination templates.

    A fresh connection is opened per call, so the store can be used from
    ``asyncio.to_thread`` workers without sharing connections.
    """

    def __init__(self, db_path: str | Path, *, timeout: float = 5.0) -> None:
        self.db_path = Path(db_path)
        self.timeout = timeout

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open {self.db_path}: {exc}") from exc
        try:
            with conn:
                yield conn
        except sqlite3.IntegrityError as exc:
            raise DuplicateStream(str(exc)) from exc
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        if self.db_path.parent and not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(CREATE_TABLE_SQL)
            for sql in INDEX_SQLS:
                conn.execute(sql)

    def get_desired_channels(self) -> set[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT DISTINCT channel_name FROM streams").fetchall()
        return {str(row[0]) for row in rows}

    def get_recipients(self, channel: str) -> list[NotificationRecipient]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT added_in_channel, user_id, custom_message FROM streams "
                "WHERE channel_name = ? ORDER BY id",
                (channel.lower(),),
            ).fetchall()
        return [
            NotificationRecipient(
                destination_channel=row[0],
                owner_user_id=row[1],
                custom_template=row[2],
            )
            for row in rows
        ]

    def remove_channel(self, channel: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM streams WHERE channel_name = ?", (channel.lower(),)
            )
            return cursor.rowcount

    def count_recipients(self, channel: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM streams WHERE channel_name = ?", (channel.lower(),)
            ).fetchone()
        return int(row[0]) if row else 0

    def count_user_streams(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM streams WHERE user_id = ?", (user_id,)
            ).fetchone()
        return int(row[0]) if row else 0

    def add_stream(
        self,
        user_id: str,
        channel: str,
        destination: str,
        custom_message: str | None = None,
        *,
        now: datetime | None = None,
    ) -> int:
        added_at = (now or datetime.now(timezone.utc)).isoformat()
        with self._connect() as conn:
            cursor = conn.execute(
                INSERT_SQL,
                (user_id, channel.lower(), destination, added_at, custom_message),
            )
            return int(cursor.lastrowid)

    def stream_owner(self, channel: str, destination: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT user_id FROM streams WHERE channel_name = ? AND added_in_channel = ?",
                (channel.lower(), destination),
            ).fetchone()
        return str(row[0]) if row else None

    def delete_stream(self, user_id: str, channel: str, destination: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM streams WHERE channel_name = ? AND added_in_channel = ? "
                "AND user_id = ?",
                (channel.lower(), destination, user_id),
            )
            return cursor.rowcount > 0

    def list_streams_for_destination(self, destination: str) -> list[StreamRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, user_id, channel_name, added_in_channel, date, custom_message "
                "FROM streams WHERE added_in_channel = ? ORDER BY id",
                (destination,),
            ).fetchall()
        return [StreamRecord(*row) for row in rows]
