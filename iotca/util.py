"""
Small encoding, hashing, randomness and clock helpers shared by the CA.
"""

import base64
import hashlib
import hmac
import secrets
import time
from datetime import datetime, timezone
from typing import Union


def _as_bytes(data: Union[bytes, str]) -> bytes:
    return data.encode('utf-8') if isinstance(data, str) else data


def sha256_bytes(data: Union[bytes, str]) -> bytes:
    """Raw SHA-256 digest; strings are hashed as UTF-8."""
    return hashlib.sha256(_as_bytes(data)).digest()


def hmac_sha256_hex(key: bytes, message: Union[bytes, str]) -> str:
    return hmac.new(key, _as_bytes(message), hashlib.sha256).hexdigest()


def constant_time_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """Equality check whose running time does not depend on where inputs differ."""
    return hmac.compare_digest(_as_bytes(a), _as_bytes(b))


def b64e(raw: bytes) -> str:
    return base64.b64encode(raw).decode('ascii')


def b64d(text: str) -> bytes:
    return base64.b64decode(text.encode('ascii'))


def now_epoch() -> int:
    """Whole seconds since the Unix epoch."""
    return int(time.time())


def utc_rfc3339(ts_epoch: int) -> str:
    """Format epoch seconds as e.g. ``2024-05-01T12:00:00Z``."""
    return datetime.fromtimestamp(ts_epoch, tz=timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def generate_nonce(num_bytes: int = 32) -> str:
    """Fresh challenge nonce from the OS CSPRNG, hex encoded (2 * num_bytes chars)."""
    return secrets.token_hex(num_bytes)


def generate_id(num_bytes: int = 16) -> str:
    """Opaque random identifier for records, sessions and approval requests."""
    return secrets.token_hex(num_bytes)
