"""
Hybrid sealing of payloads: a fresh AES-256 key encrypts the payload and is
itself wrapped under the recipient's public key.

The wire shape is the one acquisition services already write to the record
store: ``{"encryptedData", "iv", "encryptedSymmetricKey"}``, all hex encoded.
"""

from dataclasses import dataclass
from typing import Any, Dict

from . import cipher
from .keys import KeyCodec
from .security import validate_hex


@dataclass(frozen=True)
class SealedPayload:
    encrypted_data: bytes
    iv: bytes
    encrypted_symmetric_key: bytes

    def to_wire(self) -> Dict[str, str]:
        return {
            "encryptedData": self.encrypted_data.hex(),
            "iv": self.iv.hex(),
            "encryptedSymmetricKey": self.encrypted_symmetric_key.hex(),
        }

    @classmethod
    def from_wire(cls, data: Dict[str, Any], field: str = "record") -> "SealedPayload":
        """
        Parse the wire shape. ``encryptedAESKey`` is accepted for the wrapped key.

        Raises:
            ValidationError: If a field is missing or not hexadecimal
        """
        wrapped = data.get("encryptedSymmetricKey") or data.get("encryptedAESKey") or ""
        return cls(
            encrypted_data=bytes.fromhex(validate_hex(data.get("encryptedData", ""), f"{field}.encryptedData")),
            iv=bytes.fromhex(validate_hex(data.get("iv", ""), f"{field}.iv", expected_length=cipher.IV_SIZE * 2)),
            encrypted_symmetric_key=bytes.fromhex(validate_hex(wrapped, f"{field}.encryptedSymmetricKey")),
        )


def seal(codec: KeyCodec, public_key: str, plaintext: bytes) -> SealedPayload:
    """Encrypt plaintext so only the holder of the matching private key can read it."""
    key = cipher.generate_key()
    ct, iv = cipher.encrypt(key, plaintext)
    return SealedPayload(ct, iv, codec.encrypt(public_key, key))


def unwrap_key(codec: KeyCodec, private_key: str, sealed: SealedPayload) -> bytes:
    """
    Recover the symmetric key of a sealed payload.

    Raises:
        DecryptionError: If the wrapped key does not open under private_key
    """
    return codec.decrypt(private_key, sealed.encrypted_symmetric_key)


def open_sealed(codec: KeyCodec, private_key: str, sealed: SealedPayload) -> bytes:
    """
    Reverse :func:`seal`.

    Raises:
        DecryptionError: If the payload does not open under private_key
    """
    key = unwrap_key(codec, private_key, sealed)
    return cipher.decrypt(key, sealed.encrypted_data, sealed.iv)
