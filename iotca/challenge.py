"""
Challenge-response authentication.

Per service name the authenticator walks ``NO_CHALLENGE -> ISSUED ->
{CONSUMED | EXPIRED}``. A nonce is single use: the first proof that matches
consumes it, and issuing a new nonce silently invalidates the previous one.
A successful verification can open a short-lived session whose token the
data-plane endpoints accept in place of a fresh proof.
"""

import logging
import time
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict

from .errors import ValidationError
from .keys import PROOF_HMAC, PROOF_SIGNATURE, get_key_codec
from .locks import KeyedLock
from .registry import ServiceRegistry
from .security import validate_base64
from .util import constant_time_compare, generate_id, generate_nonce, hmac_sha256_hex

logger = logging.getLogger(__name__)

NONCE_BYTES = 32


class ProofKind(str, Enum):
    HMAC = PROOF_HMAC
    SIGNATURE = PROOF_SIGNATURE
    SESSION = "session"
    PRIVATE_KEY = "private_key"


@dataclass(frozen=True)
class AuthProof:
    """
    Evidence that a caller holds a service's private key.

    ``hmac`` and ``signature`` answer the pending challenge; ``session``
    carries the token of a completed challenge; ``private_key`` is the legacy
    secret-over-the-wire proof.
    """
    kind: ProofKind
    value: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any], field: str = "proof") -> "AuthProof":
        """
        Raises:
            ValidationError: If kind is unknown or value is empty
        """
        try:
            kind = ProofKind(data.get("kind"))
        except ValueError:
            raise ValidationError(f"{field}.kind", f"must be one of {[k.value for k in ProofKind]}")
        value = data.get("value")
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{field}.value", "cannot be empty")
        return cls(kind, value)

    def __repr__(self) -> str:
        return f"AuthProof(kind={self.kind.value!r})"


class ChallengeState(str, Enum):
    NO_CHALLENGE = "no_challenge"
    ISSUED = "issued"
    CONSUMED = "consumed"
    EXPIRED = "expired"


@dataclass(frozen=True)
class PendingChallenge:
    service_name: str
    nonce: str
    issued_at: float
    expires_at: float


@dataclass(frozen=True)
class Session:
    token: str
    service_name: str
    expires_at: float


def compute_hmac_proof(secret: bytes, nonce: str) -> str:
    """HMAC-SHA256 of the nonce keyed by the service secret, hex encoded."""
    return hmac_sha256_hex(secret, nonce)


class ChallengeAuthenticator:
    def __init__(
        self,
        registry: ServiceRegistry,
        ttl_seconds: int = 120,
        session_ttl_seconds: int = 900,
        clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self._ttl = ttl_seconds
        self._session_ttl = session_ttl_seconds
        self._clock = clock
        self._locks = KeyedLock()
        self._pending: Dict[str, PendingChallenge] = {}
        self._closed: Dict[str, ChallengeState] = {}
        self._sessions: Dict[str, Session] = {}
        self._sessions_lock = threading.Lock()

    # ---------------------------
    # Challenges
    # ---------------------------

    def issue_challenge(self, service_name: str) -> PendingChallenge:
        """
        Issue a fresh nonce, replacing any unconsumed one.

        Raises:
            NotFound: If the service is not registered
        """
        self._registry.get(service_name)
        now = self._clock()
        challenge = PendingChallenge(service_name, generate_nonce(NONCE_BYTES), now, now + self._ttl)
        with self._locks.hold(service_name):
            replaced = service_name in self._pending
            self._pending[service_name] = challenge
            self._closed.pop(service_name, None)
        if replaced:
            logger.debug("challenge for %s replaced before use", service_name)
        return challenge

    def verify_challenge(self, service_name: str, proof: AuthProof) -> bool:
        """
        Check a proof against the pending nonce.

        A match consumes the nonce. A mismatch leaves it pending for a retry
        until it expires; an expired nonce is discarded.
        """
        record = self._registry.lookup(service_name)
        if record is None:
            return False

        with self._locks.hold(service_name):
            challenge = self._pending.get(service_name)
            if challenge is None:
                return False
            if self._clock() >= challenge.expires_at:
                del self._pending[service_name]
                self._closed[service_name] = ChallengeState.EXPIRED
                return False
            if not self._proof_matches(record, challenge.nonce, proof):
                return False
            del self._pending[service_name]
            self._closed[service_name] = ChallengeState.CONSUMED
            return True

    @staticmethod
    def _proof_matches(record, nonce: str, proof: AuthProof) -> bool:
        codec = get_key_codec(record.algorithm)
        if proof.kind.value != codec.proof_kind:
            return False
        if proof.kind is ProofKind.HMAC:
            expected = compute_hmac_proof(codec.secret_bytes(record.private_key), nonce)
            return constant_time_compare(expected, proof.value.strip().lower())
        try:
            signature = validate_base64(proof.value, "signature")
        except ValidationError:
            return False
        return codec.verify(record.public_key, nonce.encode("utf-8"), signature)

    def state(self, service_name: str) -> ChallengeState:
        with self._locks.hold(service_name):
            challenge = self._pending.get(service_name)
            if challenge is not None:
                if self._clock() >= challenge.expires_at:
                    return ChallengeState.EXPIRED
                return ChallengeState.ISSUED
            return self._closed.get(service_name, ChallengeState.NO_CHALLENGE)

    # ---------------------------
    # Sessions
    # ---------------------------

    def open_session(self, service_name: str) -> Session:
        session = Session(generate_id(32), service_name, self._clock() + self._session_ttl)
        with self._sessions_lock:
            self._sessions[session.token] = session
        return session

    def check_session(self, service_name: str, token: str) -> bool:
        with self._sessions_lock:
            session = self._sessions.get(token)
            if session is None:
                return False
            if self._clock() >= session.expires_at:
                del self._sessions[token]
                return False
        return constant_time_compare(session.service_name, service_name)

    def purge_expired(self) -> int:
        """Drop expired challenges and sessions. Returns how many were removed."""
        now = self._clock()
        removed = 0
        for name, challenge in list(self._pending.items()):
            if now >= challenge.expires_at:
                with self._locks.hold(name):
                    current = self._pending.get(name)
                    if current is not None and now >= current.expires_at:
                        del self._pending[name]
                        self._closed[name] = ChallengeState.EXPIRED
                        removed += 1
        with self._sessions_lock:
            for token in [t for t, s in self._sessions.items() if now >= s.expires_at]:
                del self._sessions[token]
                removed += 1
        return removed

    def pending_count(self) -> int:
        return len(self._pending)

    def session_count(self) -> int:
        with self._sessions_lock:
            return len(self._sessions)
