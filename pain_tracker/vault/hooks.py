"""
Encryption hooks — a revocable encrypt/decrypt capability.

Storage code receives an ``EncryptionHooks`` instance at construction time
and calls ``encrypt``/``decrypt`` without holding a vault reference. The
vault installs its bound functions on unlock and revokes them on lock, so
any call made while locked raises ``EncryptionUnavailable``.
"""
import logging
from typing import Callable, Optional

from .exceptions import EncryptionUnavailable

logger = logging.getLogger("pain_tracker.vault")

Transform = Callable[[str], str]


class EncryptionHooks:
    """Encrypt/decrypt functions installed by the vault while it is unlocked."""

    def __init__(self) -> None:
        self._encrypt: Optional[Transform] = None
        self._decrypt: Optional[Transform] = None
        self._owner: Optional[object] = None

    @property
    def available(self) -> bool:
        return self._encrypt is not None and self._decrypt is not None

    def install(self, owner: object, encrypt: Transform, decrypt: Transform) -> None:
        """Install hooks on behalf of ``owner`` (the vault)."""
        if self._owner is not None and self._owner is not owner:
            raise RuntimeError("Encryption hooks are already installed by another vault")
        self._owner = owner
        self._encrypt = encrypt
        self._decrypt = decrypt
        logger.debug("Encryption hooks installed")

    def revoke(self, owner: object) -> None:
        """Remove hooks previously installed by ``owner``; no-op otherwise."""
        if self._owner is not owner:
            return
        self._owner = None
        self._encrypt = None
        self._decrypt = None
        logger.debug("Encryption hooks revoked")

    def encrypt(self, plaintext: str) -> str:
        if self._encrypt is None:
            raise EncryptionUnavailable("Vault is locked; encryption unavailable")
        return self._encrypt(plaintext)

    def decrypt(self, ciphertext: str) -> str:
        if self._decrypt is None:
            raise EncryptionUnavailable("Vault is locked; decryption unavailable")
        return self._decrypt(ciphertext)
