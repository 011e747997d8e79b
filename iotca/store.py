"""
Write-once storage for records encrypted under the at-rest key pool.

Records are keyed by submitting service id and collection. Backends are
picked from configuration: SQLite for real deployments, an in-memory dict
for tests and throwaway labs.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .db import Database


@dataclass(frozen=True)
class EncryptedRecord:
    record_id: str
    service_id: str
    collection: str
    ciphertext: bytes = field(repr=False)
    iv: bytes
    storage_key_id: int
    created_at: int


class EncryptedStore(ABC):
    """Records are created and read, never mutated."""

    @abstractmethod
    def put(self, record: EncryptedRecord) -> None:
        pass

    @abstractmethod
    def find_by_service(self, service_id: str, collection: Optional[str] = None) -> List[EncryptedRecord]:
        """Records of one service, oldest first."""

    @abstractmethod
    def count(self) -> int:
        pass

    def close(self) -> None:
        return


class SqliteEncryptedStore(EncryptedStore):
    def __init__(self, db: Database):
        self._db = db

    def put(self, record: EncryptedRecord) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO encrypted_records(record_id, service_id, collection, ciphertext, iv, "
                "storage_key_id, created_at) VALUES(?,?,?,?,?,?,?)",
                (record.record_id, record.service_id, record.collection, record.ciphertext,
                 record.iv, record.storage_key_id, record.created_at)
            )

    def find_by_service(self, service_id: str, collection: Optional[str] = None) -> List[EncryptedRecord]:
        sql = ("SELECT record_id, service_id, collection, ciphertext, iv, storage_key_id, created_at "
               "FROM encrypted_records WHERE service_id=?")
        params = [service_id]
        if collection is not None:
            sql += " AND collection=?"
            params.append(collection)
        sql += " ORDER BY created_at ASC, rowid ASC"
        cur = self._db.connection().execute(sql, tuple(params))
        return [
            EncryptedRecord(row["record_id"], row["service_id"], row["collection"], bytes(row["ciphertext"]),
                            bytes(row["iv"]), row["storage_key_id"], row["created_at"])
            for row in cur.fetchall()
        ]

    def count(self) -> int:
        cur = self._db.connection().execute("SELECT COUNT(*) AS cnt FROM encrypted_records")
        return cur.fetchone()["cnt"]


class InMemoryEncryptedStore(EncryptedStore):
    """Process-local store for tests and throwaway deployments."""

    def __init__(self):
        self._records: Dict[str, EncryptedRecord] = {}
        self._lock = threading.Lock()

    def put(self, record: EncryptedRecord) -> None:
        with self._lock:
            if record.record_id in self._records:
                raise ValueError(f"record {record.record_id} already exists")
            self._records[record.record_id] = record

    def find_by_service(self, service_id: str, collection: Optional[str] = None) -> List[EncryptedRecord]:
        with self._lock:
            matches = [
                r for r in self._records.values()
                if r.service_id == service_id and (collection is None or r.collection == collection)
            ]
        return sorted(matches, key=lambda r: r.created_at)

    def count(self) -> int:
        with self._lock:
            return len(self._records)


def get_encrypted_store(backend: str, db: Database) -> EncryptedStore:
    if backend == "memory":
        return InMemoryEncryptedStore()
    return SqliteEncryptedStore(db)
