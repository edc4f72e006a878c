"""
SQLite-backed local call history and settings.

All timestamps are stored as INTEGER milliseconds since the Unix epoch (UTC).
The history store exposes the async interface the reconciler uses; the
blocking sqlite calls run in a worker thread.
"""

import asyncio
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from callsync.records import CallRecord, Direction, EndReason, PeerRecord
from callsync.watermarks import from_millis, to_millis

logger = logging.getLogger(__name__)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS calls (
        id            INTEGER PRIMARY KEY AUTOINCREMENT,
        direction     TEXT    NOT NULL,
        start_ms      INTEGER NOT NULL,
        end_ms        INTEGER NOT NULL,
        end_reason    TEXT,
        attention     INTEGER NOT NULL DEFAULT 0,
        peer_address  TEXT    NOT NULL DEFAULT '',
        added_ms      INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_calls_added ON calls(added_ms);

    CREATE TABLE IF NOT EXISTS call_peers (
        call_id           INTEGER NOT NULL REFERENCES calls(id) ON DELETE CASCADE,
        position          INTEGER NOT NULL,
        address           TEXT    NOT NULL,
        normalized_number TEXT    NOT NULL DEFAULT '',
        display_name      TEXT,
        PRIMARY KEY (call_id, position)
    );

    CREATE TABLE IF NOT EXISTS settings (
        key   TEXT PRIMARY KEY,
        value INTEGER NOT NULL
    );
"""


def connect(db_path: Path | str) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


class SQLiteSettings:
    """Scalar key/value settings (watermarks, refresh rate)."""

    def __init__(self, conn: sqlite3.Connection, lock: Optional[threading.Lock] = None):
        self._conn = conn
        self._lock = lock or threading.Lock()

    def get_int(self, key: str, default: int = 0) -> int:
        with self._lock:
            row = self._conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return int(row[0]) if row else default

    def set_int(self, key: str, value: int) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, int(value)),
            )
            self._conn.commit()


class SQLiteCallHistoryStore:
    def __init__(
        self,
        conn: sqlite3.Connection,
        lock: Optional[threading.Lock] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._conn = conn
        self._lock = lock or threading.Lock()
        self._clock = clock
        self._listeners: list[Callable[[], None]] = []

    @classmethod
    def open(cls, db_path: Path | str) -> tuple["SQLiteCallHistoryStore", SQLiteSettings]:
        """Open (creating if needed) a database holding both history and settings."""
        conn = connect(db_path)
        lock = threading.Lock()
        return cls(conn, lock), SQLiteSettings(conn, lock)

    def add_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -- async interface ---------------------------------------------------

    async def find_records_added_after(self, timestamp: datetime) -> list[CallRecord]:
        return await asyncio.to_thread(self._find_added_after, to_millis(timestamp))

    async def write(self, record: CallRecord, peer_address: str) -> None:
        await asyncio.to_thread(self._write, record, peer_address)

    async def delete(self, record: CallRecord) -> None:
        await asyncio.to_thread(self._delete, record)

    async def fire_history_changed(self) -> None:
        logger.debug("Call history changed, notifying %d listeners", len(self._listeners))
        for listener in self._listeners:
            listener()

    def add_local_call(self, record: CallRecord) -> CallRecord:
        """Record a call made or received on this client."""
        self._write(record, record.peers[0].address if record.peers else "")
        return record

    def all_records(self) -> list[CallRecord]:
        return self._find_added_after(-1)

    # -- sqlite ------------------------------------------------------------

    def _find_added_after(self, millis: int) -> list[CallRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, direction, start_ms, end_ms, end_reason, attention, added_ms "
                "FROM calls WHERE added_ms > ? ORDER BY id",
                (millis,),
            ).fetchall()
            records = []
            for call_id, direction, start_ms, end_ms, end_reason, attention, added_ms in rows:
                peers = [
                    PeerRecord(address=address, normalized_number=normalized, display_name=name)
                    for address, normalized, name in self._conn.execute(
                        "SELECT address, normalized_number, display_name FROM call_peers "
                        "WHERE call_id = ? ORDER BY position",
                        (call_id,),
                    )
                ]
                records.append(CallRecord(
                    direction=Direction(direction),
                    start_time=from_millis(start_ms),
                    end_time=from_millis(end_ms),
                    peers=peers,
                    end_reason=EndReason(end_reason) if end_reason else None,
                    attention=bool(attention),
                    record_id=call_id,
                    added_at=from_millis(added_ms),
                ))
        return records

    def _write(self, record: CallRecord, peer_address: str) -> None:
        added = self._clock()
        with self._lock:
            try:
                cur = self._conn.execute(
                    "INSERT INTO calls (direction, start_ms, end_ms, end_reason, attention, peer_address, added_ms) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.direction.value,
                        to_millis(record.start_time),
                        to_millis(record.end_time),
                        record.end_reason.value if record.end_reason else None,
                        int(record.attention),
                        peer_address,
                        to_millis(added),
                    ),
                )
                call_id = cur.lastrowid
                self._conn.executemany(
                    "INSERT INTO call_peers (call_id, position, address, normalized_number, display_name) "
                    "VALUES (?, ?, ?, ?, ?)",
                    [
                        (call_id, i, p.address, p.normalized_number, p.display_name)
                        for i, p in enumerate(record.peers)
                    ],
                )
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                logger.error("Writing call record failed: %s", e)
                raise
        record.record_id = call_id
        record.added_at = added

    def _delete(self, record: CallRecord) -> None:
        if record.record_id is None:
            return
        with self._lock:
            self._conn.execute("DELETE FROM calls WHERE id = ?", (record.record_id,))
            self._conn.commit()
        record.record_id = None
