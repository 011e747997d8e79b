"""
Configuration module for the IoT Certificate Authority.

Centralizes all configuration with environment variable support and
validation. A ``Settings`` instance is built once at process start and
injected into every component.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from .keys import ALGORITHMS

APPROVAL_MODES = ("queue", "console", "auto_approve", "auto_deny")
REAUTH_POLICIES = ("approval", "channel")
STORE_BACKENDS = ("sqlite", "memory")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes")


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass
class Settings:
    """Runtime configuration. Field defaults are the development defaults."""

    env: str = "dev"  # dev|stage|prod

    # Persistence
    db_path: str = "data/iotca.db"
    encrypted_store_backend: str = "sqlite"
    storage_key_pool_size: int = 3

    # Key issuance
    key_algorithm: str = "rsa"
    rsa_key_bits: int = 2048

    # Challenge-response
    challenge_ttl_seconds: int = 120
    session_ttl_seconds: int = 900
    allow_legacy_key_proof: bool = False

    # Onboarding
    approval_mode: str = "queue"
    approval_timeout_seconds: float = 300.0
    reauth_policy: str = "approval"
    admin_token: str = field(default="", repr=False)

    # Rate limits (requests per minute)
    connect_rpm: int = 30
    authenticate_rpm: int = 120

    # Logging
    log_level: str = "INFO"
    log_json: bool = True
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``IOTCA_*`` environment variables."""
        settings = cls(
            env=os.getenv("IOTCA_ENV", "dev"),
            db_path=os.getenv("IOTCA_DB_PATH", "data/iotca.db"),
            encrypted_store_backend=os.getenv("IOTCA_ENCRYPTED_STORE_BACKEND", "sqlite"),
            storage_key_pool_size=_env_int("IOTCA_STORAGE_KEY_POOL_SIZE", 3),
            key_algorithm=os.getenv("IOTCA_KEY_ALGORITHM", "rsa").lower(),
            rsa_key_bits=_env_int("IOTCA_RSA_KEY_BITS", 2048),
            challenge_ttl_seconds=_env_int("IOTCA_CHALLENGE_TTL_SECONDS", 120),
            session_ttl_seconds=_env_int("IOTCA_SESSION_TTL_SECONDS", 900),
            allow_legacy_key_proof=_env_bool("IOTCA_ALLOW_LEGACY_KEY_PROOF", False),
            approval_mode=os.getenv("IOTCA_APPROVAL_MODE", "queue").lower(),
            approval_timeout_seconds=_env_float("IOTCA_APPROVAL_TIMEOUT_SECONDS", 300.0),
            reauth_policy=os.getenv("IOTCA_REAUTH_POLICY", "approval").lower(),
            admin_token=os.getenv("IOTCA_ADMIN_TOKEN", ""),
            connect_rpm=_env_int("IOTCA_CONNECT_RPM", 30),
            authenticate_rpm=_env_int("IOTCA_AUTHENTICATE_RPM", 120),
            log_level=os.getenv("IOTCA_LOG_LEVEL", "INFO"),
            log_json=_env_bool("IOTCA_LOG_JSON", True),
            log_file=os.getenv("IOTCA_LOG_FILE") or None,
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """
        Check that every setting has a supported value.

        Raises:
            ValueError: On the first invalid setting
        """
        if self.key_algorithm not in ALGORITHMS:
            raise ValueError(f"key_algorithm must be one of {ALGORITHMS}")
        if self.approval_mode not in APPROVAL_MODES:
            raise ValueError(f"approval_mode must be one of {APPROVAL_MODES}")
        if self.reauth_policy not in REAUTH_POLICIES:
            raise ValueError(f"reauth_policy must be one of {REAUTH_POLICIES}")
        if self.encrypted_store_backend not in STORE_BACKENDS:
            raise ValueError(f"encrypted_store_backend must be one of {STORE_BACKENDS}")
        if self.storage_key_pool_size < 1:
            raise ValueError("storage_key_pool_size must be positive")
        if self.rsa_key_bits < 2048:
            raise ValueError("rsa_key_bits must be at least 2048")
        for name in ("challenge_ttl_seconds", "session_ttl_seconds", "approval_timeout_seconds",
                     "connect_rpm", "authenticate_rpm"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if is_production(self):
            if self.approval_mode == "auto_approve":
                raise ValueError("approval_mode auto_approve is not allowed in prod")
            if self.approval_mode == "queue" and not self.admin_token:
                raise ValueError("approval_mode queue needs an admin_token in prod")


def is_production(settings: Settings) -> bool:
    return settings.env == "prod"
