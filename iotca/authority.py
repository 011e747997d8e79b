"""
The Certificate Authority: onboarding, authentication and the data plane.

A service's relationship with the CA moves ``Unregistered -> Registered ->
Authenticated``. Onboarding is the only step that may wait on a human. It is
a coroutine, and while the approval gate deliberates it holds only the
per-name onboarding lock: concurrent requests for the same new name reach
the operator once, and other services are never blocked. Everything else is
synchronous and guarded by per-key locks inside the registry and the
challenge authenticator.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from . import cipher
from .approval import ApprovalGate, ApprovalRequest, get_approval_gate
from .challenge import AuthProof, ChallengeAuthenticator, PendingChallenge, ProofKind, Session
from .config import Settings
from .db import Database
from .errors import (
    ApprovalDenied,
    ApprovalTimedOut,
    AuthenticationFailed,
    DecryptionError,
    DuplicateServiceIdError,
    Forbidden,
    InvalidKeyError,
    NotFound,
    ValidationError,
)
from .hybrid import SealedPayload, open_sealed, seal
from .keys import get_key_codec
from .locks import AsyncKeyedLock
from .logging_config import audit_log
from .registry import ServiceIdentity, ServiceMetadata, ServiceRecord, ServiceRegistry
from .security import validate_collection, validate_service_id, validate_service_name
from .storage_keys import StorageKeyPool
from .store import EncryptedRecord, EncryptedStore, get_encrypted_store
from .util import generate_id, now_epoch, utc_rfc3339

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Onboarding:
    """Outcome of a successful connection request."""
    record: ServiceRecord
    created: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"approved": True, "created": self.created, "keys": self.record.keys_dict()}


@dataclass(frozen=True)
class SealedRecord:
    """A stored record re-sealed for one requester."""
    collection: str
    record_id: str
    created_at: int
    payload: SealedPayload

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "recordId": self.record_id,
            "createdAt": utc_rfc3339(self.created_at),
            "data": self.payload.to_wire(),
        }


class CertificateAuthority:
    def __init__(
        self,
        settings: Settings,
        db: Database,
        registry: ServiceRegistry,
        storage_keys: StorageKeyPool,
        store: EncryptedStore,
        authenticator: ChallengeAuthenticator,
        approval_gate: ApprovalGate,
    ):
        self.settings = settings
        self.db = db
        self.registry = registry
        self.storage_keys = storage_keys
        self.store = store
        self.authenticator = authenticator
        self.approval_gate = approval_gate
        self._onboarding = AsyncKeyedLock()

    # ---------------------------
    # Onboarding
    # ---------------------------

    async def connection_request(
        self,
        identity: ServiceIdentity,
        metadata: ServiceMetadata,
        private_key: Optional[str] = None,
        target_service_id: Optional[str] = None,
    ) -> Onboarding:
        """
        Admit a new service or recognize a known one.

        Unknown names go through the approval gate and get fresh keys. Known
        names get their existing keys back, either by presenting the issued
        private key or according to ``reauth_policy`` when they present none.

        Raises:
            ValidationError: Malformed identity, or a key request sent to the wrong operation
            ApprovalDenied, ApprovalTimedOut: The gate refused or did not answer
            DuplicateServiceIdError: service_id is claimed by another name
            AuthenticationFailed: Known name with wrong id or wrong private key
        """
        if target_service_id:
            raise ValidationError("targetServiceId", "key requests for other services go through requestKey")
        validate_service_name(identity.service_name)
        validate_service_id(identity.service_id)

        existing = self.registry.lookup(identity.service_name)
        if existing is None:
            async with self._onboarding.hold(identity.service_name):
                existing = self.registry.lookup(identity.service_name)
                if existing is None:
                    return await self._onboard_new(identity, metadata)
            if existing.identity == identity and existing.metadata == metadata and not private_key:
                # admitted while this request waited behind an identical one
                audit_log.authentication_result(identity.service_name, "joined_onboarding", True)
                return Onboarding(existing, created=False)

        if existing.service_id != identity.service_id:
            audit_log.authentication_result(identity.service_name, "connection_request", False, "service_id_mismatch")
            raise AuthenticationFailed(f"service {identity.service_name} is registered under a different serviceId")

        if private_key:
            if not self.registry.verify_private_key(identity.service_name, private_key):
                audit_log.authentication_result(identity.service_name, ProofKind.PRIVATE_KEY.value, False,
                                                "private_key_mismatch")
                raise AuthenticationFailed("private key does not match the registered service")
            audit_log.authentication_result(identity.service_name, ProofKind.PRIVATE_KEY.value, True)
            return Onboarding(existing, created=False)

        if self.settings.reauth_policy == "channel":
            audit_log.authentication_result(identity.service_name, "channel", True)
            return Onboarding(existing, created=False)

        await self._await_approval(ApprovalRequest(
            service_name=existing.service_name,
            service_id=existing.service_id,
            owner=metadata.owner or existing.owner,
            description=metadata.description or existing.description,
            addresses=metadata.addresses if metadata.addresses is not None else existing.addresses,
            can_write_data=existing.can_write_data,
            reason="reauthentication",
        ))
        return Onboarding(existing, created=False)

    async def _onboard_new(self, identity: ServiceIdentity, metadata: ServiceMetadata) -> Onboarding:
        await self._await_approval(ApprovalRequest(
            service_name=identity.service_name,
            service_id=identity.service_id,
            owner=metadata.owner,
            description=metadata.description,
            addresses=metadata.addresses,
            can_write_data=metadata.can_write_data,
            reason="new_service",
        ))

        claimed = self.registry.lookup_by_id(identity.service_id)
        if claimed is not None:
            raise DuplicateServiceIdError(f"serviceId {identity.service_id} is already claimed")

        codec = get_key_codec(self.settings.key_algorithm, self.settings.rsa_key_bits)
        keypair = await asyncio.to_thread(codec.generate_key_pair)
        record = self.registry.register(identity, keypair, metadata)
        audit_log.service_registered(record.service_name, record.service_id, record.algorithm, record.can_write_data)
        return Onboarding(record, created=True)

    async def _await_approval(self, request: ApprovalRequest) -> None:
        try:
            approved = await asyncio.wait_for(
                self.approval_gate.request_approval(request),
                timeout=self.settings.approval_timeout_seconds,
            )
        except asyncio.TimeoutError:
            audit_log.approval_decision(request.service_name, request.service_id, request.reason, "timed_out")
            raise ApprovalTimedOut()

        outcome = "approved" if approved else "denied"
        audit_log.approval_decision(request.service_name, request.service_id, request.reason, outcome)
        if not approved:
            raise ApprovalDenied()

    def pending_approvals(self) -> List[ApprovalRequest]:
        return self.approval_gate.pending()

    def resolve_approval(self, request_id: str, approved: bool) -> None:
        """
        Raises:
            NotFound: If no request with this id is waiting
        """
        if not self.approval_gate.resolve(request_id, approved):
            raise NotFound(f"approval request {request_id} is not pending")

    # ---------------------------
    # Challenge-response
    # ---------------------------

    def issue_token(self, service_name: str) -> PendingChallenge:
        validate_service_name(service_name)
        return self.authenticator.issue_challenge(service_name)

    def authenticate(self, service_name: str, proof: AuthProof) -> Optional[Session]:
        """
        Verify a proof over the pending nonce and open a session on success.

        Returns None when the proof does not verify.

        Raises:
            NotFound: If the service is not registered
            ValidationError: If the proof is not a challenge proof
        """
        validate_service_name(service_name)
        self.registry.get(service_name)
        if proof.kind not in (ProofKind.HMAC, ProofKind.SIGNATURE):
            raise ValidationError("proof.kind", "authenticate expects an hmac or signature proof")

        if not self.authenticator.verify_challenge(service_name, proof):
            audit_log.authentication_result(service_name, proof.kind.value, False, "proof_rejected")
            return None
        audit_log.authentication_result(service_name, proof.kind.value, True)
        return self.authenticator.open_session(service_name)

    def _require_proof(self, record: ServiceRecord, proof: Optional[AuthProof]) -> None:
        if proof is None:
            audit_log.authentication_result(record.service_name, "none", False, "missing_proof")
            raise AuthenticationFailed("a proof of identity is required")

        if proof.kind is ProofKind.PRIVATE_KEY:
            if not self.settings.allow_legacy_key_proof:
                audit_log.authentication_result(record.service_name, proof.kind.value, False, "legacy_proof_disabled")
                raise AuthenticationFailed("private key proofs are disabled; authenticate with a challenge")
            ok = self.registry.verify_private_key(record.service_name, proof.value)
        elif proof.kind is ProofKind.SESSION:
            ok = self.authenticator.check_session(record.service_name, proof.value)
        else:
            ok = self.authenticator.verify_challenge(record.service_name, proof)

        audit_log.authentication_result(record.service_name, proof.kind.value, ok,
                                        None if ok else "proof_rejected")
        if not ok:
            raise AuthenticationFailed("proof of identity rejected")

    def _authenticated_requester(self, requester_id: str, proof: Optional[AuthProof]) -> ServiceRecord:
        validate_service_id(requester_id, "requesterServiceId")
        requester = self.registry.lookup_by_id(requester_id)
        if requester is None:
            audit_log.security_event("unknown_requester", requester_service_id=requester_id)
            raise AuthenticationFailed("requester is not a registered service")
        self._require_proof(requester, proof)
        return requester

    # ---------------------------
    # Data plane
    # ---------------------------

    def request_key(self, requester_id: str, proof: Optional[AuthProof], target_id: str) -> ServiceRecord:
        """
        Disclose the target's private key to an authenticated requester.

        Any registered, authenticated service may obtain any other service's
        key; every disclosure is audited at high severity.

        Raises:
            AuthenticationFailed: Unknown requester or rejected proof
            NotFound: Unknown target
        """
        requester = self._authenticated_requester(requester_id, proof)
        validate_service_id(target_id, "targetServiceId")
        target = self.registry.get_by_id(target_id)
        audit_log.key_disclosed(requester.service_id, target.service_id)
        return target

    def submit_data(self, service_id: str, proof: Optional[AuthProof], collection: str,
                    sealed: SealedPayload) -> EncryptedRecord:
        """
        Open a sealed record and store it re-encrypted under a pool key.

        Raises:
            NotFound: Unknown service
            AuthenticationFailed: Rejected proof
            Forbidden: Service may not write data
            DecryptionError: Record does not open under the service's key
        """
        validate_service_id(service_id)
        validate_collection(collection)
        record = self.registry.get_by_id(service_id)
        self._require_proof(record, proof)
        if not record.can_write_data:
            audit_log.security_event("write_denied", service_id=service_id, collection=collection)
            raise Forbidden(f"service {record.service_name} is not allowed to write data")

        codec = get_key_codec(record.algorithm)
        try:
            plaintext = open_sealed(codec, record.private_key, sealed)
        except InvalidKeyError as e:
            raise DecryptionError(f"record could not be opened: {e.message}") from e

        storage_key = self.storage_keys.choose()
        ciphertext, iv = cipher.encrypt(storage_key.key, plaintext)
        stored = EncryptedRecord(
            record_id=generate_id(),
            service_id=record.service_id,
            collection=collection,
            ciphertext=ciphertext,
            iv=iv,
            storage_key_id=storage_key.key_id,
            created_at=now_epoch(),
        )
        self.store.put(stored)
        audit_log.data_submitted(stored.service_id, stored.collection, stored.record_id, stored.storage_key_id)
        return stored

    def request_decrypted_data(self, requester_id: str, proof: Optional[AuthProof], target_id: str,
                               collection: Optional[str] = None) -> List[SealedRecord]:
        """
        Return the target's records, each re-sealed under the requester's public key.

        Records that cannot be opened are logged and left out of the result.

        Raises:
            AuthenticationFailed: Unknown requester or rejected proof
            NotFound: Unknown target
        """
        requester = self._authenticated_requester(requester_id, proof)
        validate_service_id(target_id, "targetServiceId")
        if collection is not None:
            validate_collection(collection, "collection")
        target = self.registry.get_by_id(target_id)
        codec = get_key_codec(requester.algorithm)

        released: List[SealedRecord] = []
        skipped = 0
        for stored in self.store.find_by_service(target.service_id, collection):
            try:
                storage_key = self.storage_keys.get(stored.storage_key_id)
                plaintext = cipher.decrypt(storage_key.key, stored.ciphertext, stored.iv)
                payload = seal(codec, requester.public_key, plaintext)
            except (NotFound, DecryptionError, InvalidKeyError) as e:
                logger.warning("skipping record %s: %s", stored.record_id, e)
                audit_log.record_skipped(stored.record_id, e.code)
                skipped += 1
                continue
            released.append(SealedRecord(stored.collection, stored.record_id, stored.created_at, payload))

        audit_log.data_released(requester.service_id, target.service_id, len(released), skipped)
        return released

    def get_public_key(self, service_name: Optional[str] = None, service_id: Optional[str] = None) -> str:
        """
        Raises:
            ValidationError: If neither name nor id is given
            NotFound: If the service is not registered
        """
        if service_name:
            return self.registry.get(service_name).public_key
        if service_id:
            return self.registry.get_by_id(service_id).public_key
        raise ValidationError("serviceName", "serviceName or serviceId is required")

    # ---------------------------
    # Lifecycle
    # ---------------------------

    def stats(self) -> Dict[str, Any]:
        rv: Dict[str, Any] = dict(self.db.stats())
        rv["stored_records"] = self.store.count()
        rv["storage_key_ids"] = self.storage_keys.ids()
        rv["pending_challenges"] = self.authenticator.pending_count()
        rv["active_sessions"] = self.authenticator.session_count()
        rv["pending_approvals"] = len(self.approval_gate.pending())
        return rv

    def close(self) -> None:
        self.store.close()
        self.db.close()
        logger.info("certificate authority closed")


def build_authority(
    settings: Settings,
    approval_gate: Optional[ApprovalGate] = None,
    store: Optional[EncryptedStore] = None,
) -> CertificateAuthority:
    """Construct every component, load persisted state and wire them together."""
    settings.validate()
    db = Database(settings.db_path)
    db.init_schema()

    registry = ServiceRegistry(db)
    storage_keys = StorageKeyPool(db, settings.storage_key_pool_size)
    storage_keys.load_or_create()

    authority = CertificateAuthority(
        settings=settings,
        db=db,
        registry=registry,
        storage_keys=storage_keys,
        store=store or get_encrypted_store(settings.encrypted_store_backend, db),
        authenticator=ChallengeAuthenticator(registry, settings.challenge_ttl_seconds,
                                             settings.session_ttl_seconds),
        approval_gate=approval_gate or get_approval_gate(settings),
    )
    logger.info("certificate authority ready (algorithm=%s, services=%d)",
                settings.key_algorithm, registry.count())
    return authority
