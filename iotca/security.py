"""
Input checks applied to every identity, encoding and collection name
before it reaches the registry or the crypto layer, plus the helpers used
to keep secrets out of logs.
"""

import base64
import binascii
import re
from typing import Any, Dict, Iterable, Optional

from .errors import ValidationError


_HEX = re.compile(r'^[0-9a-f]+$')
_BASE64 = re.compile(r'^[A-Za-z0-9+/]*={0,2}$')
_SERVICE_NAME = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$')
_SERVICE_ID = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._:-]{0,127}$')
_COLLECTION = re.compile(r'^[A-Za-z0-9_.-]{1,64}$')

REDACTED = "[REDACTED]"

# Request and log keys whose values are never written out.
SECRET_KEYS = frozenset({
    "privateKey", "private_key", "requesterPrivateKey", "signature", "hmac",
    "value", "sessionToken", "session_token", "token", "secret", "password",
})


def _text(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")
    text = value.strip()
    if not text:
        raise ValidationError(field_name, "cannot be empty")
    return text


def validate_hex(value: str, field_name: str, expected_length: Optional[int] = None) -> str:
    """
    Check an even-length hex string and return it lowercased.

    ``expected_length`` counts hex characters, not bytes.
    """
    text = _text(value, field_name).lower()
    if len(text) % 2 or not _HEX.fullmatch(text):
        raise ValidationError(field_name, "must be valid hexadecimal")
    if expected_length and len(text) != expected_length:
        raise ValidationError(field_name, f"must be {expected_length} characters")
    return text


def validate_base64(value: str, field_name: str) -> bytes:
    """Decode standard padded base64, raising ValidationError on anything else."""
    text = _text(value, field_name)
    if not _BASE64.fullmatch(text):
        raise ValidationError(field_name, "must be valid base64")
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(field_name, "must be valid base64")


def _bounded(value: Any, field_name: str, max_length: int, pattern: "re.Pattern") -> str:
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")
    if not value:
        raise ValidationError(field_name, "cannot be empty")
    if len(value) > max_length:
        raise ValidationError(field_name, f"must not exceed {max_length} characters")
    if not pattern.fullmatch(value):
        raise ValidationError(field_name, "invalid format")
    return value


def validate_service_name(value: str, field_name: str = "serviceName") -> str:
    return _bounded(value, field_name, 64, _SERVICE_NAME)


def validate_service_id(value: str, field_name: str = "serviceId") -> str:
    return _bounded(value, field_name, 128, _SERVICE_ID)


def validate_collection(value: str, field_name: str = "record.collection") -> str:
    return _bounded(value, field_name, 64, _COLLECTION)


def extract_client_id(headers: Dict[str, str], remote_host: Optional[str] = None) -> str:
    """
    Rate limit key for a request: first X-Forwarded-For hop, else the
    socket peer, else ``anonymous``.
    """
    hops = [h.strip() for h in headers.get("x-forwarded-for", "").split(",") if h.strip()]
    peer = hops[0] if hops else remote_host
    return f"ip:{peer}" if peer else "anonymous"


def sanitize_for_logging(data: Dict[str, Any], secret_keys: Iterable[str] = SECRET_KEYS) -> Dict[str, Any]:
    """Copy of ``data`` with secret values replaced, descending into dicts and lists."""
    secret_keys = frozenset(secret_keys)

    def scrub(value: Any) -> Any:
        if isinstance(value, dict):
            return {k: REDACTED if k in secret_keys else scrub(v) for k, v in value.items()}
        if isinstance(value, list):
            return [scrub(item) for item in value]
        return value

    return scrub(data)
