"""
Vault Configuration — Validated settings for the local vault.

Reads optional overrides from environment variables:
    VAULT_NAMESPACE = <prefix shared by every vault-managed storage key>
    VAULT_MIN_PASSPHRASE_LENGTH = <integer, at least 12>
    VAULT_OPSLIMIT = <Argon2id passes>
    VAULT_MEMLIMIT = <Argon2id memory in bytes>

Unset KDF limits fall back to the password-hash library's "moderate" preset.

Security Note:
    Never log passphrases or key material. Only log parameter values.
"""
import os
import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("pain_tracker.vault")

VAULT_VERSION = "3.0.0"
METADATA_KEY = "vault:metadata"
DEFAULT_NAMESPACE = "pt:"
MIN_PASSPHRASE_LENGTH = 12
DEFAULT_SALT_LENGTH = 16
# libsodium's crypto_pwhash_MEMLIMIT_MIN
MEMLIMIT_MIN = 8192


def _env_int(name: str) -> Optional[int]:
    """Read an integer environment variable, ``None`` when unset."""
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return None
    return int(raw)


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    namespace: str = Field(default=DEFAULT_NAMESPACE, min_length=1)
    metadata_key: str = Field(default=METADATA_KEY, min_length=1)
    min_passphrase_length: int = Field(default=MIN_PASSPHRASE_LENGTH, ge=MIN_PASSPHRASE_LENGTH)
    opslimit: Optional[int] = Field(default=None, ge=1)
    memlimit: Optional[int] = Field(default=None, ge=MEMLIMIT_MIN)

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        """Namespace must end with ':' so prefixes never collide."""
        if not v.endswith(":"):
            raise ValueError(f"Namespace must end with ':', got {v!r}")
        return v

    @property
    def metadata_storage_key(self) -> str:
        """Fully-qualified byte-store key holding the vault metadata."""
        return f"{self.namespace}{self.metadata_key}"

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.
        """
        values = {}
        namespace = os.environ.get("VAULT_NAMESPACE")
        if namespace:
            values["namespace"] = namespace
        min_length = _env_int("VAULT_MIN_PASSPHRASE_LENGTH")
        if min_length is not None:
            values["min_passphrase_length"] = min_length
        opslimit = _env_int("VAULT_OPSLIMIT")
        if opslimit is not None:
            values["opslimit"] = opslimit
        memlimit = _env_int("VAULT_MEMLIMIT")
        if memlimit is not None:
            values["memlimit"] = memlimit
        config = cls(**values)
        logger.debug(
            "Vault config: namespace=%s opslimit=%s memlimit=%s",
            config.namespace, config.opslimit, config.memlimit,
        )
        return config
