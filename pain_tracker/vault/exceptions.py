"""
Vault error taxonomy.

Every failure surfaced by the vault derives from ``VaultError`` so callers
can catch the whole family. Messages never include passphrases, key
material or payloads.
"""


class VaultError(Exception):
    """Base class for vault failures."""


class WeakPassphrase(VaultError, ValueError):
    """Passphrase shorter than the configured minimum."""


class PrimitivesUnavailable(VaultError, RuntimeError):
    """The cryptographic libraries could not be initialized."""


class PrimitivesNotReady(PrimitivesUnavailable):
    """Primitives were used before initialization completed."""


class NotConfigured(VaultError):
    """No vault metadata exists yet."""


class AlreadyConfigured(VaultError):
    """Vault metadata exists; clear the vault before setting it up again."""


class IncorrectPassphrase(VaultError):
    """The passphrase did not unlock the vault."""

    def __init__(self, message: str = "Incorrect passphrase."):
        super().__init__(message)


class VerificationFailed(IncorrectPassphrase):
    """Passphrase verification raised inside the password-hash library.

    Presents the same message as ``IncorrectPassphrase`` so a corrupted
    vault is indistinguishable from a mistyped passphrase.
    """


class UnlockAborted(VaultError):
    """The vault was locked while a key derivation was in flight."""


class PersistFailure(VaultError):
    """Vault metadata could not be written."""


class KeyNotSet(VaultError):
    """Encryption was requested while the vault is locked."""


class InvalidKey(VaultError):
    """Held key does not match the cipher's key size."""


class StorageError(VaultError):
    """The underlying byte store rejected an operation."""


class EncryptionUnavailable(VaultError):
    """Encryption hooks are revoked; storage must fail closed."""


class NotAnEnvelope(VaultError, ValueError):
    """Payload does not have the encrypted envelope shape."""


class DecryptionFailed(VaultError):
    """Envelope-shaped payload failed authentication or decoding."""
