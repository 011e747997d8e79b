"""
Symmetric encryption for telemetry payloads and storage at rest.

AES-256-CBC with PKCS7 padding and a fresh random 16-byte IV on every call.
CBC carries no integrity protection; this matches the record format the
acquisition services already produce.
"""

import os
from typing import Tuple

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import DecryptionError, InvalidKeyError

KEY_SIZE = 32
IV_SIZE = 16
BLOCK_BITS = 128


def generate_key() -> bytes:
    """Random 256-bit AES key."""
    return os.urandom(KEY_SIZE)


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise InvalidKeyError(f"symmetric key must be {KEY_SIZE} bytes")


def encrypt(key: bytes, plaintext: bytes) -> Tuple[bytes, bytes]:
    """Encrypt plaintext and return (ciphertext, iv)."""
    _check_key(key)
    iv = os.urandom(IV_SIZE)
    padder = padding.PKCS7(BLOCK_BITS).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize(), iv


def decrypt(key: bytes, ciphertext: bytes, iv: bytes) -> bytes:
    """
    Decrypt ciphertext produced by :func:`encrypt`.

    Raises:
        DecryptionError: wrong key length, malformed IV or ciphertext, or bad padding
    """
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise DecryptionError(f"symmetric key must be {KEY_SIZE} bytes")
    if len(iv) != IV_SIZE:
        raise DecryptionError(f"iv must be {IV_SIZE} bytes")
    if not ciphertext or len(ciphertext) % IV_SIZE:
        raise DecryptionError("ciphertext length is not a multiple of the block size")

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionError("invalid padding (wrong key or corrupted data)") from e
