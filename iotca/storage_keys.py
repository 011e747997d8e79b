"""
Fixed pool of symmetric keys used to re-encrypt telemetry at rest.

The pool is generated on first start and persisted; later starts load it
unchanged. Records reference the key that sealed them by integer id, which
decouples at-rest encryption from any single service's key lifecycle.
"""

import logging
import secrets
import threading
from dataclasses import dataclass, field
from typing import Dict, List

from . import cipher
from .db import Database
from .errors import NotFound
from .util import b64d, b64e, now_epoch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageKey:
    key_id: int
    key: bytes = field(repr=False)


class StorageKeyPool:
    def __init__(self, db: Database, size: int = 3):
        self._db = db
        self._size = size
        self._keys: Dict[int, StorageKey] = {}
        self._lock = threading.Lock()

    def load_or_create(self) -> List[StorageKey]:
        """Load the persisted pool, generating it if this is the first start."""
        with self._lock:
            with self._db.transaction() as conn:
                rows = conn.execute("SELECT key_id, key_b64 FROM storage_keys ORDER BY key_id").fetchall()
                if not rows:
                    created_at = now_epoch()
                    for key_id in range(1, self._size + 1):
                        conn.execute(
                            "INSERT INTO storage_keys(key_id, key_b64, created_at) VALUES(?,?,?)",
                            (key_id, b64e(cipher.generate_key()), created_at)
                        )
                    rows = conn.execute("SELECT key_id, key_b64 FROM storage_keys ORDER BY key_id").fetchall()
                    logger.info("generated storage key pool of %d keys", len(rows))
                elif len(rows) != self._size:
                    logger.warning("storage key pool has %d keys, configured size is %d; using persisted pool",
                                   len(rows), self._size)

            self._keys = {row["key_id"]: StorageKey(row["key_id"], b64d(row["key_b64"])) for row in rows}
            return list(self._keys.values())

    def choose(self) -> StorageKey:
        """Uniformly random key from the pool."""
        with self._lock:
            if not self._keys:
                raise RuntimeError("storage key pool is not loaded")
            return self._keys[secrets.choice(list(self._keys))]

    def get(self, key_id: int) -> StorageKey:
        with self._lock:
            key = self._keys.get(key_id)
        if key is None:
            raise NotFound(f"storage key {key_id} does not exist")
        return key

    def ids(self) -> List[int]:
        with self._lock:
            return sorted(self._keys)
