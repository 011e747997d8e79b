"""
Database module for the IoT Certificate Authority.

Provides SQLite-based storage for the service registry, the storage key pool
and encrypted telemetry records. Connections are thread-local and every
write commits before returning, so an acknowledged write survives restart.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List

TABLES = ("services", "storage_keys", "encrypted_records")


class Database:
    """
    Owner of the SQLite file and its per-thread connections.

    Created at process start, closed at shutdown.
    """

    def __init__(self, path: str):
        self._path = Path(path)
        self._local = threading.local()
        self._lock = threading.Lock()
        self._connections: List[sqlite3.Connection] = []
        self._closed = False

    @property
    def path(self) -> Path:
        return self._path

    def connection(self) -> sqlite3.Connection:
        """
        Get a thread-local database connection.
        Connections are reused within the same thread for performance.
        """
        conn = getattr(self._local, "conn", None)
        if conn is None:
            if self._closed:
                raise RuntimeError("database is closed")
            self._path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self._path), check_same_thread=False, timeout=30)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=FULL;")
            conn.execute("PRAGMA foreign_keys=ON;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database transactions.
        Automatically commits on success, rolls back on failure.
        """
        conn = self.connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def init_schema(self) -> None:
        """
        Initialize database schema with indexes.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self.transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS services (
                service_name TEXT PRIMARY KEY,
                service_id TEXT NOT NULL UNIQUE,
                owner TEXT NOT NULL DEFAULT '',
                description TEXT NOT NULL DEFAULT '',
                addresses_json TEXT,
                can_write_data INTEGER NOT NULL DEFAULT 0,
                algorithm TEXT NOT NULL,
                private_key TEXT NOT NULL,
                public_key TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS storage_keys (
                key_id INTEGER PRIMARY KEY,
                key_b64 TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS encrypted_records (
                record_id TEXT PRIMARY KEY,
                service_id TEXT NOT NULL,
                collection TEXT NOT NULL,
                ciphertext BLOB NOT NULL,
                iv BLOB NOT NULL,
                storage_key_id INTEGER NOT NULL,
                created_at INTEGER NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_encrypted_records_service
            ON encrypted_records(service_id, collection);""")

    def stats(self) -> Dict[str, int]:
        """Row counts per table for monitoring."""
        conn = self.connection()
        stats = {}
        for table in TABLES:
            cur = conn.execute(f"SELECT COUNT(*) AS cnt FROM {table}")
            stats[f"{table}_count"] = cur.fetchone()["cnt"]
        return stats

    def reset(self) -> None:
        """
        Clear all tables but preserve schema.
        Test support only.
        """
        with self.transaction() as conn:
            for table in TABLES:
                conn.execute(f"DELETE FROM {table}")

    def close(self) -> None:
        """Close every connection opened by any thread."""
        with self._lock:
            self._closed = True
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()
        self._local = threading.local()
