"""
Vault Metadata — Persisted KDF, verification and cipher parameters.

Stored as plain JSON under ``<namespace>vault:metadata`` so it can be read
while the vault is locked. It holds no key material: the salt alone cannot
reproduce the key and the verification hash is an independent
self-salted Argon2id string.
"""
import logging
import binascii
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Literal, Optional

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .config import MEMLIMIT_MIN, METADATA_KEY
from .crypto import b64decode
from .exceptions import StorageError

if TYPE_CHECKING:
    from ..storage import SecureStorage

logger = logging.getLogger("pain_tracker.vault")

# AEAD key and nonce sizes per declared cipher.
CIPHER_KEY_BYTES = {"xchacha20-poly1305": 32}
CIPHER_NONCE_BYTES = {"xchacha20-poly1305": 24}


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision (``...T12:00:00.000Z``)."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class DerivationParams(_WireModel):
    algorithm: Literal["argon2id"] = "argon2id"
    salt: str
    opslimit: int = Field(ge=1)
    memlimit: int = Field(ge=MEMLIMIT_MIN)
    key_length: int = Field(alias="keyLength", ge=1)

    @field_validator("salt")
    @classmethod
    def validate_salt(cls, v: str) -> str:
        try:
            decoded = b64decode(v)
        except (binascii.Error, ValueError) as err:
            raise ValueError("salt must be standard base64") from err
        if not decoded:
            raise ValueError("salt must not be empty")
        return v

    @property
    def salt_bytes(self) -> bytes:
        return b64decode(self.salt)


class VerificationParams(_WireModel):
    algorithm: Literal["argon2id"] = "argon2id"
    hash: str = Field(min_length=1)


class CipherParams(_WireModel):
    algorithm: Literal["xchacha20-poly1305"] = "xchacha20-poly1305"
    nonce_length: int = Field(alias="nonceLength", ge=1)


class MigrationMarkers(_WireModel):
    legacy_completed_at: Optional[str] = Field(default=None, alias="legacyCompletedAt")


class VaultMetadata(_WireModel):
    """Single persisted vault document."""

    version: str
    created_at: str = Field(alias="createdAt")
    updated_at: str = Field(alias="updatedAt")
    derivation: DerivationParams
    verification: VerificationParams
    cipher: CipherParams
    migrations: MigrationMarkers = Field(default_factory=MigrationMarkers)

    @model_validator(mode="after")
    def validate_cipher_sizes(self) -> "VaultMetadata":
        """Key length and nonce length must match the declared cipher."""
        algorithm = self.cipher.algorithm
        if self.derivation.key_length != CIPHER_KEY_BYTES[algorithm]:
            raise ValueError(
                f"keyLength {self.derivation.key_length} does not match "
                f"{algorithm} key size {CIPHER_KEY_BYTES[algorithm]}"
            )
        if self.cipher.nonce_length != CIPHER_NONCE_BYTES[algorithm]:
            raise ValueError(
                f"nonceLength {self.cipher.nonce_length} does not match "
                f"{algorithm} nonce size {CIPHER_NONCE_BYTES[algorithm]}"
            )
        return self

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return orjson.dumps(self.to_wire()).decode("utf-8")

    def with_migration(self, completed: bool) -> "VaultMetadata":
        """Copy with ``updatedAt`` refreshed and, if ``completed``, the legacy marker."""
        now = utc_timestamp()
        migrations = self.migrations
        if completed:
            migrations = migrations.model_copy(update={"legacy_completed_at": now})
        return self.model_copy(update={"updated_at": now, "migrations": migrations})


class MetadataStore:
    """Reads and writes the vault metadata entry.

    No other code writes to the metadata key.
    """

    def __init__(self, storage: "SecureStorage", key: str = METADATA_KEY):
        self._storage = storage
        self.key = key

    @property
    def storage_key(self) -> str:
        return self._storage.full_key(self.key)

    def load(self) -> Optional[VaultMetadata]:
        """Return stored metadata, or None when absent or corrupt. Never raises."""
        try:
            raw = self._storage.get_raw(self.key)
        except Exception as err:
            logger.warning("Failed to read vault metadata: %s", err)
            return None
        if raw is None:
            return None
        try:
            return VaultMetadata.model_validate(orjson.loads(raw))
        except (orjson.JSONDecodeError, ValidationError) as err:
            logger.warning("Ignoring corrupt vault metadata: %s", err)
            return None

    def save(self, metadata: VaultMetadata) -> None:
        """Persist metadata.

        Raises:
            StorageError: If the backend rejects the write.
        """
        try:
            self._storage.set_raw(self.key, metadata.to_json())
        except StorageError:
            raise
        except OSError as err:
            raise StorageError(f"Failed to persist vault metadata: {err}") from err

    def remove(self) -> None:
        self._storage.remove(self.key)
