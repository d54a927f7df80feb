"""
Database module for the record key custody service.

Provides a durable SQLite-backed key custody store. Key material is sealed
before it is written, so the database file alone does not disclose keys.
Uses thread-local connections and single-statement writes so each custody
operation is atomic.
"""

import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional

from .custody import (
    CONTENT_PREFIX,
    RECORD_PREFIX,
    KeyCustodyStore,
    KeyPhase,
    KeyRecord,
    _check_handle,
    _check_material,
)
from .errors import CustodyCorruption, HandleConflict, KeyNotFound
from .sealing import KeySealer


_PHASE_PREFIX = {
    KeyPhase.ENCRYPTED: CONTENT_PREFIX,
    KeyPhase.ASSOCIATED: RECORD_PREFIX,
}


class SqliteKeyCustodyStore(KeyCustodyStore):
    """
    Durable key custody store.

    Survives restarts; the sealer's master key must be available to read
    keys back. Connections are reused within the same thread.
    """

    def __init__(self, db_path: str, sealer: KeySealer):
        if db_path == ":memory:":
            raise ValueError("SqliteKeyCustodyStore needs a file path; use InMemoryKeyCustodyStore instead")
        self._path = Path(db_path)
        self._sealer = sealer
        self._local = threading.local()
        self._conns: List[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()
        self.init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a thread-local database connection.
        Connections are reused within the same thread for performance.
        """
        conn = getattr(self._local, "conn", None)
        if conn is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self._path), check_same_thread=False, timeout=30)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=FULL;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._conns_lock:
                self._conns.append(conn)
        return conn

    @contextmanager
    def _transaction(self):
        """
        Context manager for database transactions.
        Automatically commits on success, rolls back on failure.
        """
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def init_db(self) -> None:
        """
        Initialize database schema.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self._transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS key_records (
                handle TEXT PRIMARY KEY,
                sealed_material BLOB NOT NULL,
                sealer_kid TEXT NOT NULL,
                created_at REAL NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_key_records_created
            ON key_records(created_at);""")

    def _to_record(self, row: sqlite3.Row) -> KeyRecord:
        if row["sealer_kid"] != self._sealer.get_kid():
            raise CustodyCorruption(
                f"key {row['handle']} sealed under {row['sealer_kid']}, active sealer is {self._sealer.get_kid()}"
            )
        return KeyRecord(
            handle=row["handle"],
            material=self._sealer.unseal(bytes(row["sealed_material"])),
            created_at=row["created_at"],
        )

    def put(self, handle: str, material: bytes) -> KeyRecord:
        _check_handle(handle)
        _check_material(material)
        created_at = time.time()
        sealed = self._sealer.seal(bytes(material))
        try:
            with self._transaction() as conn:
                conn.execute(
                    "INSERT INTO key_records(handle, sealed_material, sealer_kid, created_at) VALUES(?,?,?,?)",
                    (handle, sealed, self._sealer.get_kid(), created_at)
                )
        except sqlite3.IntegrityError:
            raise HandleConflict(handle)
        return KeyRecord(handle=handle, material=bytes(material), created_at=created_at)

    def get_record(self, handle: str) -> KeyRecord:
        conn = self._get_connection()
        cur = conn.execute(
            "SELECT handle, sealed_material, sealer_kid, created_at FROM key_records WHERE handle=?",
            (handle,)
        )
        row = cur.fetchone()
        if row is None:
            raise KeyNotFound(handle)
        return self._to_record(row)

    def rekey(self, old_handle: str, new_handle: str) -> KeyRecord:
        """
        Move a key to a new handle with one UPDATE.
        The PRIMARY KEY constraint rejects an occupied target.
        """
        _check_handle(old_handle)
        _check_handle(new_handle)
        try:
            with self._transaction() as conn:
                cur = conn.execute(
                    "UPDATE key_records SET handle=? WHERE handle=?",
                    (new_handle, old_handle)
                )
                if cur.rowcount != 1:
                    raise KeyNotFound(old_handle)
        except sqlite3.IntegrityError:
            raise HandleConflict(new_handle)
        return self.get_record(new_handle)

    def delete(self, handle: str) -> None:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM key_records WHERE handle=?", (handle,))
            if cur.rowcount != 1:
                raise KeyNotFound(handle)

    def overwrite(self, handle: str, material: bytes) -> KeyRecord:
        _check_material(material)
        sealed = self._sealer.seal(bytes(material))
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE key_records SET sealed_material=?, sealer_kid=? WHERE handle=?",
                (sealed, self._sealer.get_kid(), handle)
            )
            if cur.rowcount != 1:
                raise KeyNotFound(handle)
        return self.get_record(handle)

    def list_records(
        self,
        phase: Optional[KeyPhase] = None,
        older_than: Optional[float] = None
    ) -> List[KeyRecord]:
        sql = "SELECT handle, sealed_material, sealer_kid, created_at FROM key_records WHERE 1=1"
        params: list = []
        if phase in _PHASE_PREFIX:
            sql += " AND substr(handle, 1, ?) = ?"
            prefix = _PHASE_PREFIX[phase]
            params.extend([len(prefix), prefix])
        if older_than is not None:
            sql += " AND created_at < ?"
            params.append(older_than)
        sql += " ORDER BY created_at ASC"

        conn = self._get_connection()
        rows = conn.execute(sql, params).fetchall()
        return [self._to_record(row) for row in rows]

    def count(self) -> int:
        conn = self._get_connection()
        return conn.execute("SELECT COUNT(*) AS cnt FROM key_records").fetchone()["cnt"]

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._conns_lock:
            for conn in self._conns:
                conn.close()
            self._conns.clear()
        self._local = threading.local()
