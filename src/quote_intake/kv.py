"""
Expiring key-value store and bounded audit log, both backed by SQLite.

The database file is the single source of truth shared by every handler
instance: counters, verification tokens, cooldown markers and cached
analyses live here, never in process memory. Each call opens its own
connection; read-modify-write operations run inside ``BEGIN IMMEDIATE`` so
concurrent writers on the same key serialize on the SQLite write lock.
"""

import json
import secrets
import sqlite3
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

Clock = Callable[[], float]


class KVStore:
    """Key-value entries with optional time-to-live."""

    def __init__(self, db_path: Path, clock: Clock = time.time):
        self.db_path = db_path
        self.clock = clock

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside an immediate (write-locked) transaction."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _expiry(self, ttl_seconds: float | None) -> float | None:
        if ttl_seconds is None:
            return None
        return self.clock() + ttl_seconds

    def _is_live(self, row: sqlite3.Row | None) -> bool:
        if row is None:
            return False
        return row["expires_ts"] is None or row["expires_ts"] > self.clock()

    # -------------------------------------------------------------------------
    # Plain values
    # -------------------------------------------------------------------------

    def get(self, key: str) -> str | None:
        """Return the value for ``key``; expired entries read as absent."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT value, expires_ts FROM kv_entries WHERE key = ?", (key,)
            ).fetchone()
        finally:
            conn.close()
        return row["value"] if self._is_live(row) else None

    def get_json(self, key: str) -> Any:
        value = self.get(key)
        return json.loads(value) if value is not None else None

    def put(self, key: str, value: str, ttl_seconds: float | None = None) -> None:
        """Write ``value``, replacing any existing entry and its TTL."""
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO kv_entries (key, value, counter, expires_ts)
                VALUES (?, ?, 0, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    counter = 0,
                    expires_ts = excluded.expires_ts
                """,
                (key, value, self._expiry(ttl_seconds)),
            )
        finally:
            conn.close()

    def put_json(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        self.put(key, json.dumps(value), ttl_seconds)

    def put_if_absent(self, key: str, value: str, ttl_seconds: float | None = None) -> bool:
        """
        Write ``value`` only if no live entry exists for ``key``.

        Returns True if this call created the entry. Exactly one of several
        concurrent callers wins.
        """
        with self._write() as conn:
            row = conn.execute(
                "SELECT expires_ts FROM kv_entries WHERE key = ?", (key,)
            ).fetchone()
            if self._is_live(row):
                return False
            conn.execute(
                "INSERT OR REPLACE INTO kv_entries (key, value, counter, expires_ts) "
                "VALUES (?, ?, 0, ?)",
                (key, value, self._expiry(ttl_seconds)),
            )
            return True

    def delete(self, key: str) -> None:
        conn = self._connect()
        try:
            conn.execute("DELETE FROM kv_entries WHERE key = ?", (key,))
        finally:
            conn.close()

    def ttl_remaining(self, key: str) -> float | None:
        """Seconds until ``key`` expires; None if absent or without expiry."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT expires_ts FROM kv_entries WHERE key = ?", (key,)
            ).fetchone()
        finally:
            conn.close()
        if not self._is_live(row) or row["expires_ts"] is None:
            return None
        return row["expires_ts"] - self.clock()

    # -------------------------------------------------------------------------
    # Counters
    # -------------------------------------------------------------------------

    def increment_if_below(self, key: str, limit: int, ttl_seconds: float) -> int | None:
        """
        Atomically bump the counter at ``key`` unless it has reached ``limit``.

        A missing or expired counter is created at 1 with ``ttl_seconds`` to
        live; later increments keep the original expiry. Returns the new count,
        or None when the limit was already reached (the counter is unchanged).
        """
        if limit <= 0:
            return None

        with self._write() as conn:
            row = conn.execute(
                "SELECT counter, expires_ts FROM kv_entries WHERE key = ?", (key,)
            ).fetchone()

            if not self._is_live(row):
                conn.execute(
                    "INSERT OR REPLACE INTO kv_entries (key, value, counter, expires_ts) "
                    "VALUES (?, NULL, 1, ?)",
                    (key, self._expiry(ttl_seconds)),
                )
                return 1

            if row["counter"] >= limit:
                return None

            conn.execute(
                "UPDATE kv_entries SET counter = counter + 1 WHERE key = ?", (key,)
            )
            return row["counter"] + 1

    def get_counter(self, key: str) -> int:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT counter, expires_ts FROM kv_entries WHERE key = ?", (key,)
            ).fetchone()
        finally:
            conn.close()
        return row["counter"] if self._is_live(row) else 0

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Delete expired entries. Returns the number removed."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                "DELETE FROM kv_entries WHERE expires_ts IS NOT NULL AND expires_ts <= ?",
                (self.clock(),),
            )
            return cursor.rowcount
        finally:
            conn.close()


@dataclass
class AuditEntry:
    """One audit log line."""

    entry_id: str
    ts: float
    kind: str
    message: str
    request_id: str | None = None
    payload_json: str | None = None

    @property
    def payload(self) -> dict | None:
        if self.payload_json:
            return json.loads(self.payload_json)
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "ts": self.ts,
            "kind": self.kind,
            "message": self.message,
            "request_id": self.request_id,
            "payload": self.payload,
        }


class AuditLog:
    """
    Append-only log with size and age eviction.

    Every append drops entries older than ``ttl_seconds`` and keeps at most
    ``max_entries`` of the newest ones.
    """

    def __init__(
        self,
        db_path: Path,
        max_entries: int = 500,
        ttl_seconds: float = 30 * 24 * 3600,
        clock: Clock = time.time,
    ):
        self.db_path = db_path
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def append(
        self,
        kind: str,
        message: str,
        request_id: str | None = None,
        payload: dict | None = None,
    ) -> str:
        entry_id = secrets.token_hex(16)
        now = self.clock()

        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO audit_log (entry_id, ts, kind, request_id, message, payload_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entry_id,
                    now,
                    kind,
                    request_id,
                    message,
                    json.dumps(payload) if payload else None,
                ),
            )
            conn.execute("DELETE FROM audit_log WHERE ts < ?", (now - self.ttl_seconds,))
            conn.execute(
                """
                DELETE FROM audit_log WHERE entry_id NOT IN (
                    SELECT entry_id FROM audit_log ORDER BY ts DESC, rowid DESC LIMIT ?
                )
                """,
                (self.max_entries,),
            )
            conn.commit()
        finally:
            conn.close()

        return entry_id

    def recent(self, limit: int = 100, kind: str | None = None) -> list[AuditEntry]:
        """Newest entries first."""
        conn = self._connect()
        try:
            if kind:
                cursor = conn.execute(
                    "SELECT entry_id, ts, kind, message, request_id, payload_json "
                    "FROM audit_log WHERE kind = ? ORDER BY ts DESC, rowid DESC LIMIT ?",
                    (kind, limit),
                )
            else:
                cursor = conn.execute(
                    "SELECT entry_id, ts, kind, message, request_id, payload_json "
                    "FROM audit_log ORDER BY ts DESC, rowid DESC LIMIT ?",
                    (limit,),
                )
            return [AuditEntry(**dict(row)) for row in cursor.fetchall()]
        finally:
            conn.close()
