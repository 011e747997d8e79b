"""
Key management module for the IoT Certificate Authority.

Provides key codecs for the asymmetric material the CA issues to services:

- RSA (cryptography): PEM keys, PKCS#1 v1.5/SHA-256 signatures and RSA-OAEP
  wrapping of symmetric keys. Services holding RSA keys prove identity by
  signing challenges.
- X25519 (PyNaCl): raw base64 keys, ECDH shared secrets hashed with SHA-256
  into AES keys for ECIES-style wrapping. Services holding X25519 keys prove
  identity with an HMAC of the challenge keyed by their private key.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from nacl.bindings import crypto_scalarmult
from nacl.exceptions import CryptoError
from nacl.public import PrivateKey

from . import cipher
from .errors import DecryptionError, InvalidKeyError
from .util import b64d, b64e, sha256_bytes

ALGORITHM_RSA = "rsa"
ALGORITHM_X25519 = "x25519"
ALGORITHMS = (ALGORITHM_RSA, ALGORITHM_X25519)

PROOF_SIGNATURE = "signature"
PROOF_HMAC = "hmac"

X25519_KEY_SIZE = 32


@dataclass(frozen=True)
class KeyPair:
    """An issued key pair, serialized for storage and transport."""
    private_key: str
    public_key: str
    algorithm: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "privateKey": self.private_key,
            "publicKey": self.public_key,
            "algorithm": self.algorithm,
        }


def normalize_key_text(key: str) -> str:
    """Normalize line endings and surrounding whitespace of serialized key material."""
    return key.replace("\r\n", "\n").strip()


class KeyCodec(ABC):
    """Abstract interface for one family of service keys."""

    algorithm: str = ""
    proof_kind: str = ""

    @abstractmethod
    def generate_key_pair(self) -> KeyPair:
        """Generate a fresh key pair from the system CSPRNG."""
        pass

    @abstractmethod
    def sign(self, private_key: str, message: bytes) -> bytes:
        pass

    @abstractmethod
    def verify(self, public_key: str, message: bytes, signature: bytes) -> bool:
        pass

    @abstractmethod
    def encrypt(self, public_key: str, payload: bytes) -> bytes:
        """
        Encrypt a short payload (a symmetric key) for the holder of private_key.

        Raises:
            InvalidKeyError: If the public key is malformed
        """
        pass

    @abstractmethod
    def decrypt(self, private_key: str, ciphertext: bytes) -> bytes:
        """
        Reverse :meth:`encrypt`.

        Raises:
            InvalidKeyError: If the private key is malformed
            DecryptionError: If the ciphertext is corrupt or was made for another key
        """
        pass

    @abstractmethod
    def secret_bytes(self, private_key: str) -> bytes:
        """Raw secret used to key HMAC proofs."""
        pass


class RsaKeyCodec(KeyCodec):
    """RSA keys serialized as PEM (PKCS#8 private, SubjectPublicKeyInfo public)."""

    algorithm = ALGORITHM_RSA
    proof_kind = PROOF_SIGNATURE

    # Defaults of the Node acquisition clients: OAEP with SHA-1, PKCS#1 v1.5 with SHA-256
    _OAEP = padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA1()), algorithm=hashes.SHA1(), label=None)
    _SIGN_PADDING = padding.PKCS1v15()

    def __init__(self, key_bits: int = 2048):
        if key_bits < 2048:
            raise ValueError("RSA keys must be at least 2048 bits")
        self._key_bits = key_bits

    def generate_key_pair(self) -> KeyPair:
        sk = rsa.generate_private_key(public_exponent=65537, key_size=self._key_bits)
        private_pem = sk.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")
        public_pem = sk.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")
        return KeyPair(private_pem, public_pem, self.algorithm)

    def _load_private(self, private_key: str) -> rsa.RSAPrivateKey:
        try:
            key = serialization.load_pem_private_key(private_key.encode("ascii"), password=None)
        except (ValueError, TypeError, UnicodeEncodeError, UnsupportedAlgorithm) as e:
            raise InvalidKeyError("malformed RSA private key") from e
        if not isinstance(key, rsa.RSAPrivateKey):
            raise InvalidKeyError("PEM does not contain an RSA private key")
        return key

    def _load_public(self, public_key: str) -> rsa.RSAPublicKey:
        try:
            key = serialization.load_pem_public_key(public_key.encode("ascii"))
        except (ValueError, TypeError, UnicodeEncodeError, UnsupportedAlgorithm) as e:
            raise InvalidKeyError("malformed RSA public key") from e
        if not isinstance(key, rsa.RSAPublicKey):
            raise InvalidKeyError("PEM does not contain an RSA public key")
        return key

    def sign(self, private_key: str, message: bytes) -> bytes:
        return self._load_private(private_key).sign(message, self._SIGN_PADDING, hashes.SHA256())

    def verify(self, public_key: str, message: bytes, signature: bytes) -> bool:
        try:
            self._load_public(public_key).verify(signature, message, self._SIGN_PADDING, hashes.SHA256())
            return True
        except (InvalidSignature, InvalidKeyError):
            return False

    def encrypt(self, public_key: str, payload: bytes) -> bytes:
        try:
            return self._load_public(public_key).encrypt(payload, self._OAEP)
        except ValueError as e:
            raise InvalidKeyError("payload too large for RSA-OAEP") from e

    def decrypt(self, private_key: str, ciphertext: bytes) -> bytes:
        key = self._load_private(private_key)
        try:
            return key.decrypt(ciphertext, self._OAEP)
        except ValueError as e:
            raise DecryptionError("RSA decryption failed (wrong key or corrupted data)") from e

    def secret_bytes(self, private_key: str) -> bytes:
        return normalize_key_text(private_key).encode("ascii")


class X25519KeyCodec(KeyCodec):
    """
    X25519 keys serialized as base64 of the raw 32 bytes.

    Wrapped payload layout: ``ephemeral_public(32) || iv(16) || aes_cbc(payload)``
    where the AES key is SHA-256 of the ECDH shared secret.
    """

    algorithm = ALGORITHM_X25519
    proof_kind = PROOF_HMAC

    def generate_key_pair(self) -> KeyPair:
        sk = PrivateKey.generate()
        return KeyPair(b64e(bytes(sk)), b64e(bytes(sk.public_key)), self.algorithm)

    @staticmethod
    def _raw(key: str, what: str) -> bytes:
        try:
            raw = b64d(normalize_key_text(key))
        except (ValueError, UnicodeEncodeError) as e:
            raise InvalidKeyError(f"malformed X25519 {what} key") from e
        if len(raw) != X25519_KEY_SIZE:
            raise InvalidKeyError(f"X25519 {what} key must be {X25519_KEY_SIZE} bytes")
        return raw

    def derive_shared_secret(self, local_private: str, remote_public: str) -> bytes:
        """Raw ECDH output between a local private key and a remote public key."""
        return self._exchange(self._raw(local_private, "private"), self._raw(remote_public, "public"))

    @staticmethod
    def _exchange(private_raw: bytes, public_raw: bytes) -> bytes:
        try:
            return crypto_scalarmult(private_raw, public_raw)
        except CryptoError as e:
            raise DecryptionError("X25519 key agreement failed") from e

    @staticmethod
    def derive_symmetric_key(shared_secret: bytes) -> bytes:
        return sha256_bytes(shared_secret)

    def sign(self, private_key: str, message: bytes) -> bytes:
        raise InvalidKeyError("X25519 keys cannot produce signatures; use an HMAC proof")

    def verify(self, public_key: str, message: bytes, signature: bytes) -> bool:
        return False

    def encrypt(self, public_key: str, payload: bytes) -> bytes:
        remote = self._raw(public_key, "public")
        ephemeral = PrivateKey.generate()
        key = self.derive_symmetric_key(self._exchange(bytes(ephemeral), remote))
        ct, iv = cipher.encrypt(key, payload)
        return bytes(ephemeral.public_key) + iv + ct

    def decrypt(self, private_key: str, ciphertext: bytes) -> bytes:
        local = self._raw(private_key, "private")
        if len(ciphertext) < X25519_KEY_SIZE + cipher.IV_SIZE + cipher.IV_SIZE:
            raise DecryptionError("wrapped payload is truncated")
        ephemeral_pub = ciphertext[:X25519_KEY_SIZE]
        iv = ciphertext[X25519_KEY_SIZE:X25519_KEY_SIZE + cipher.IV_SIZE]
        body = ciphertext[X25519_KEY_SIZE + cipher.IV_SIZE:]
        key = self.derive_symmetric_key(self._exchange(local, ephemeral_pub))
        return cipher.decrypt(key, body, iv)

    def secret_bytes(self, private_key: str) -> bytes:
        return self._raw(private_key, "private")

    @staticmethod
    def public_key_for(private_key: str) -> str:
        """Public half of a serialized X25519 private key."""
        raw = X25519KeyCodec._raw(private_key, "private")
        return b64e(bytes(PrivateKey(raw).public_key))


_codecs: Dict[str, KeyCodec] = {}
_codecs_lock = threading.Lock()


def get_key_codec(algorithm: str = ALGORITHM_RSA, rsa_key_bits: int = 2048) -> KeyCodec:
    """
    Factory function returning the codec for an algorithm.

    Codecs are stateless; one instance per (algorithm, size) is shared.

    Raises:
        ValueError: If the algorithm is not supported
    """
    if algorithm not in ALGORITHMS:
        raise ValueError(f"unsupported key algorithm: {algorithm}")
    cache_key = f"{algorithm}:{rsa_key_bits}" if algorithm == ALGORITHM_RSA else algorithm
    with _codecs_lock:
        codec = _codecs.get(cache_key)
        if codec is None:
            codec = RsaKeyCodec(rsa_key_bits) if algorithm == ALGORITHM_RSA else X25519KeyCodec()
            _codecs[cache_key] = codec
        return codec
