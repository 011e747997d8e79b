"""
IoT Certificate Authority

A small trust service for sensor deployments. The CA admits acquisition and
consumer services (with operator approval), issues each an RSA or X25519 key
pair, authenticates them by challenge-response, and brokers encrypted
telemetry between them: records arrive sealed under the submitter's key, are
stored re-encrypted under a pool key, and leave sealed under the reader's key.

Usage:
    from iotca import Settings, build_authority, StaticApprovalGate

    ca = build_authority(Settings(db_path="ca.db"), approval_gate=StaticApprovalGate(True))
    onboarding = await ca.connection_request(
        ServiceIdentity("DataAcquisition", "acq-01"),
        ServiceMetadata(owner="lab", can_write_data=True),
    )

    challenge = ca.issue_token("DataAcquisition")
    # sign (RSA) or HMAC (X25519) challenge.nonce with the issued private key
    session = ca.authenticate("DataAcquisition", AuthProof(ProofKind.SIGNATURE, signature_b64))

Over HTTP the same operations are served by ``iotca.main.create_app``;
``iotca.client.CAClient`` is the matching client.
"""

__version__ = "1.0.0"

from .approval import (
    ApprovalGate,
    ApprovalRequest,
    ConsoleApprovalGate,
    QueuedApprovalGate,
    StaticApprovalGate,
)
from .authority import CertificateAuthority, Onboarding, SealedRecord, build_authority
from .challenge import AuthProof, ChallengeAuthenticator, ChallengeState, ProofKind, Session
from .config import Settings
from .errors import (
    ApprovalDenied,
    ApprovalTimedOut,
    AuthenticationFailed,
    AuthorityError,
    DecryptionError,
    DuplicateServiceIdError,
    DuplicateServiceNameError,
    Forbidden,
    InvalidKeyError,
    NotFound,
    RateLimited,
    ValidationError,
)
from .hybrid import SealedPayload
from .keys import KeyPair, get_key_codec
from .registry import ServiceIdentity, ServiceMetadata, ServiceRecord

__all__ = [
    "__version__",
    # Onboarding
    "ApprovalGate",
    "ApprovalRequest",
    "ConsoleApprovalGate",
    "QueuedApprovalGate",
    "StaticApprovalGate",
    # Authority
    "CertificateAuthority",
    "Onboarding",
    "SealedRecord",
    "build_authority",
    "Settings",
    # Authentication
    "AuthProof",
    "ChallengeAuthenticator",
    "ChallengeState",
    "ProofKind",
    "Session",
    # Registry and keys
    "KeyPair",
    "get_key_codec",
    "ServiceIdentity",
    "ServiceMetadata",
    "ServiceRecord",
    "SealedPayload",
    # Errors
    "AuthorityError",
    "ValidationError",
    "ApprovalDenied",
    "ApprovalTimedOut",
    "DuplicateServiceIdError",
    "DuplicateServiceNameError",
    "AuthenticationFailed",
    "NotFound",
    "InvalidKeyError",
    "DecryptionError",
    "Forbidden",
    "RateLimited",
]
