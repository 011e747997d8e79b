"""
Service registry: the single source of truth for which services are known
to the CA and with which key material.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .db import Database
from .errors import DuplicateServiceIdError, DuplicateServiceNameError, NotFound
from .keys import KeyPair, normalize_key_text
from .locks import KeyedLock
from .util import constant_time_compare, now_epoch

logger = logging.getLogger(__name__)

_COLUMNS = ("service_name, service_id, owner, description, addresses_json, can_write_data, "
            "algorithm, private_key, public_key, created_at")


@dataclass(frozen=True)
class ServiceIdentity:
    service_name: str
    service_id: str


@dataclass(frozen=True)
class ServiceMetadata:
    owner: str = ""
    description: str = ""
    addresses: Any = None
    can_write_data: bool = False


@dataclass(frozen=True)
class ServiceRecord:
    service_name: str
    service_id: str
    owner: str
    description: str
    addresses: Any
    can_write_data: bool
    algorithm: str
    private_key: str
    public_key: str
    created_at: int

    @property
    def identity(self) -> ServiceIdentity:
        return ServiceIdentity(self.service_name, self.service_id)

    @property
    def metadata(self) -> ServiceMetadata:
        return ServiceMetadata(self.owner, self.description, self.addresses, self.can_write_data)

    @property
    def key_pair(self) -> KeyPair:
        return KeyPair(self.private_key, self.public_key, self.algorithm)

    def keys_dict(self) -> Dict[str, str]:
        """Key material as returned to the service itself."""
        rv = self.key_pair.to_dict()
        rv["serviceId"] = self.service_id
        return rv

    def public_dict(self) -> Dict[str, Any]:
        """Everything except the private key."""
        return {
            "serviceName": self.service_name,
            "serviceId": self.service_id,
            "owner": self.owner,
            "description": self.description,
            "canWriteData": self.can_write_data,
            "algorithm": self.algorithm,
            "publicKey": self.public_key,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ServiceRecord":
        return cls(
            service_name=row["service_name"],
            service_id=row["service_id"],
            owner=row["owner"],
            description=row["description"],
            addresses=json.loads(row["addresses_json"]) if row["addresses_json"] else None,
            can_write_data=bool(row["can_write_data"]),
            algorithm=row["algorithm"],
            private_key=row["private_key"],
            public_key=row["public_key"],
            created_at=row["created_at"],
        )


class ServiceRegistry:
    """
    Durable mapping from service identity to issued key material.

    Registration is atomic per service name and per service id; the row is
    committed before ``register`` returns.
    """

    def __init__(self, db: Database):
        self._db = db
        self._locks = KeyedLock()

    def register(self, identity: ServiceIdentity, keypair: KeyPair, metadata: ServiceMetadata) -> ServiceRecord:
        """
        Persist a newly issued identity.

        Raises:
            DuplicateServiceIdError: If service_id belongs to another service name
            DuplicateServiceNameError: If service_name is already registered
        """
        with self._locks.hold(f"name:{identity.service_name}", f"id:{identity.service_id}"):
            by_id = self.lookup_by_id(identity.service_id)
            if by_id is not None and by_id.service_name != identity.service_name:
                raise DuplicateServiceIdError(f"serviceId {identity.service_id} is already claimed")
            if self.lookup(identity.service_name) is not None:
                raise DuplicateServiceNameError(f"service {identity.service_name} is already registered")

            record = ServiceRecord(
                service_name=identity.service_name,
                service_id=identity.service_id,
                owner=metadata.owner,
                description=metadata.description,
                addresses=metadata.addresses,
                can_write_data=metadata.can_write_data,
                algorithm=keypair.algorithm,
                private_key=keypair.private_key,
                public_key=keypair.public_key,
                created_at=now_epoch(),
            )
            try:
                with self._db.transaction() as conn:
                    conn.execute(
                        f"INSERT INTO services({_COLUMNS}) VALUES(?,?,?,?,?,?,?,?,?,?)",
                        (record.service_name, record.service_id, record.owner, record.description,
                         json.dumps(record.addresses) if record.addresses is not None else None,
                         int(record.can_write_data), record.algorithm, record.private_key,
                         record.public_key, record.created_at)
                    )
            except sqlite3.IntegrityError as e:
                # another process sharing the file won the race
                raise DuplicateServiceIdError(f"service {identity.service_name} conflicts with an existing entry") from e

        logger.info("registered service %s (%s)", record.service_name, record.service_id)
        return record

    def lookup(self, service_name: str) -> Optional[ServiceRecord]:
        cur = self._db.connection().execute(
            f"SELECT {_COLUMNS} FROM services WHERE service_name=?", (service_name,)
        )
        row = cur.fetchone()
        return ServiceRecord.from_row(row) if row else None

    def lookup_by_id(self, service_id: str) -> Optional[ServiceRecord]:
        cur = self._db.connection().execute(
            f"SELECT {_COLUMNS} FROM services WHERE service_id=?", (service_id,)
        )
        row = cur.fetchone()
        return ServiceRecord.from_row(row) if row else None

    def get(self, service_name: str) -> ServiceRecord:
        record = self.lookup(service_name)
        if record is None:
            raise NotFound(f"service {service_name} is not registered")
        return record

    def get_by_id(self, service_id: str) -> ServiceRecord:
        record = self.lookup_by_id(service_id)
        if record is None:
            raise NotFound(f"serviceId {service_id} is not registered")
        return record

    def verify_private_key(self, service_name: str, candidate_key: str) -> bool:
        """Legacy authentication: constant-time match against the stored private key."""
        record = self.lookup(service_name)
        if record is None or not candidate_key:
            return False
        return constant_time_compare(normalize_key_text(record.private_key), normalize_key_text(candidate_key))

    def list_services(self) -> List[ServiceRecord]:
        cur = self._db.connection().execute(f"SELECT {_COLUMNS} FROM services ORDER BY created_at, service_name")
        return [ServiceRecord.from_row(row) for row in cur.fetchall()]

    def count(self) -> int:
        cur = self._db.connection().execute("SELECT COUNT(*) AS cnt FROM services")
        return cur.fetchone()["cnt"]
