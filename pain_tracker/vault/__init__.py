"""Local Vault — Passphrase-derived encryption for client-persisted state.

Security Note (Threat Model):
    The data-encryption key is derived with Argon2id and held in process
    memory only while the vault is unlocked. It is wiped on lock, but a
    managed runtime cannot guarantee that no copy survives, so a memory dump
    of an unlocked process may expose it. Hardware-backed key storage is out
    of scope.
"""

from .config import VaultConfig
from .exceptions import (
    VaultError,
    WeakPassphrase,
    PrimitivesUnavailable,
    PrimitivesNotReady,
    NotConfigured,
    AlreadyConfigured,
    IncorrectPassphrase,
    VerificationFailed,
    UnlockAborted,
    PersistFailure,
    KeyNotSet,
    InvalidKey,
    StorageError,
    EncryptionUnavailable,
    NotAnEnvelope,
    DecryptionFailed,
)
from .crypto import is_envelope
from .hooks import EncryptionHooks
from .metadata import VaultMetadata, MetadataStore
from .migration import sweep_legacy_entries
from .primitives import PrimitiveProvider, Primitives, default_provider
from .service import VaultService, VaultState, VaultStatus

__all__ = [
    "VaultService",
    "VaultState",
    "VaultStatus",
    "VaultConfig",
    "VaultMetadata",
    "MetadataStore",
    "EncryptionHooks",
    "PrimitiveProvider",
    "Primitives",
    "default_provider",
    "sweep_legacy_entries",
    "is_envelope",
    "VaultError",
    "WeakPassphrase",
    "PrimitivesUnavailable",
    "PrimitivesNotReady",
    "NotConfigured",
    "AlreadyConfigured",
    "IncorrectPassphrase",
    "VerificationFailed",
    "UnlockAborted",
    "PersistFailure",
    "KeyNotSet",
    "InvalidKey",
    "StorageError",
    "EncryptionUnavailable",
    "NotAnEnvelope",
    "DecryptionFailed",
]
