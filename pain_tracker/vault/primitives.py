"""
Vault Primitive Provider — One-time initialization of the crypto libraries.

Password hashing (Argon2id) comes from argon2-cffi, authenticated encryption
(XChaCha20-Poly1305) and the CSPRNG from PyNaCl's libsodium bindings.
KDF limits use libsodium units: ``opslimit`` is the number of passes and
``memlimit`` is a byte count, hashed with parallelism 1. This keeps vault
metadata interchangeable with libsodium's ``crypto_pwhash``.

Security Note:
    Key buffers are ``bytearray`` so they can be wiped in place. The runtime
    may still hold copies (immutable ``bytes`` handed to the AEAD binding),
    so zeroing is best-effort, not a guarantee.
"""
import asyncio
import logging
import threading
from typing import Any, Callable, Optional

from .exceptions import DecryptionFailed, PrimitivesUnavailable, VerificationFailed

logger = logging.getLogger("pain_tracker.vault")

AEAD_ALGORITHM = "xchacha20-poly1305"
KDF_ALGORITHM = "argon2id"
VERIFICATION_HASH_LENGTH = 32
VERIFICATION_SALT_LENGTH = 16


class Primitives:
    """Handle over the initialized cryptographic libraries."""

    def __init__(
        self,
        low_level: Any,
        password_hasher_cls: Any,
        argon2_type: Any,
        argon2_exceptions: Any,
        aead: Any,
        crypto_error: type,
        random: Callable[[int], bytes],
        salt_bytes: int,
        opslimit_moderate: int,
        memlimit_moderate: int,
    ):
        self._low_level = low_level
        self._hasher_cls = password_hasher_cls
        self._type = argon2_type
        self._exc = argon2_exceptions
        self._aead = aead
        self._crypto_error = crypto_error
        self._random = random
        self.salt_bytes = salt_bytes
        self.opslimit_moderate = opslimit_moderate
        self.memlimit_moderate = memlimit_moderate
        self.key_bytes = aead.crypto_aead_xchacha20poly1305_ietf_KEYBYTES
        self.nonce_bytes = aead.crypto_aead_xchacha20poly1305_ietf_NPUBBYTES

    # ------------------------------------------------------------------
    # Argon2id
    # ------------------------------------------------------------------

    def derive_key(
        self,
        passphrase: str,
        salt: bytes,
        opslimit: int,
        memlimit: int,
        key_length: int,
    ) -> bytearray:
        """Derive the data-encryption key with Argon2id.

        Deterministic for identical inputs, so unlock reproduces the key
        created at setup.

        Returns:
            ``key_length`` bytes in a wipeable buffer.
        """
        raw = self._low_level.hash_secret_raw(
            secret=passphrase.encode("utf-8"),
            salt=salt,
            time_cost=opslimit,
            memory_cost=memlimit // 1024,
            parallelism=1,
            hash_len=key_length,
            type=self._type.ID,
        )
        return bytearray(raw)

    def _hasher(self, opslimit: int, memlimit: int) -> Any:
        return self._hasher_cls(
            time_cost=opslimit,
            memory_cost=memlimit // 1024,
            parallelism=1,
            hash_len=VERIFICATION_HASH_LENGTH,
            salt_len=VERIFICATION_SALT_LENGTH,
            type=self._type.ID,
        )

    def hash_password(self, passphrase: str, opslimit: int, memlimit: int) -> str:
        """Return a self-salted Argon2id hash string (``$argon2id$...``)."""
        return self._hasher(opslimit, memlimit).hash(passphrase)

    def verify_password(self, hashed: str, passphrase: str) -> bool:
        """Check a passphrase against a stored verification hash.

        Returns:
            True on match, False on mismatch.

        Raises:
            VerificationFailed: If the hash is malformed or the library errors.
        """
        # Parameters are read back from the hash string itself.
        hasher = self._hasher_cls()
        try:
            return bool(hasher.verify(hashed, passphrase))
        except self._exc.VerifyMismatchError:
            return False
        except (self._exc.VerificationError, self._exc.InvalidHashError) as err:
            raise VerificationFailed() from err

    # ------------------------------------------------------------------
    # XChaCha20-Poly1305
    # ------------------------------------------------------------------

    def aead_encrypt(self, message: bytes, nonce: bytes, key: bytes) -> bytes:
        """Encrypt ``message`` with no additional authenticated data."""
        return self._aead.crypto_aead_xchacha20poly1305_ietf_encrypt(
            message, None, nonce, key,
        )

    def aead_decrypt(self, ciphertext: bytes, nonce: bytes, key: bytes) -> bytes:
        """Decrypt and authenticate.

        Raises:
            DecryptionFailed: On wrong key, tampering or malformed input.
        """
        try:
            return self._aead.crypto_aead_xchacha20poly1305_ietf_decrypt(
                ciphertext, None, nonce, key,
            )
        except (self._crypto_error, ValueError, TypeError) as err:
            raise DecryptionFailed("Decryption failed") from err

    def random_bytes(self, size: int) -> bytes:
        return self._random(size)

    @staticmethod
    def memzero(buffer: Optional[bytearray]) -> None:
        """Overwrite a mutable buffer with zeros in place."""
        if buffer is None:
            return
        for i in range(len(buffer)):
            buffer[i] = 0


def load_primitives() -> Primitives:
    """Import and probe the cryptographic libraries.

    Raises:
        PrimitivesUnavailable: If a library or a required primitive is missing.
    """
    try:
        import argon2
        from argon2 import low_level, exceptions as argon2_exceptions
        import nacl.bindings
        import nacl.utils
        from nacl.exceptions import CryptoError
        from nacl.pwhash import argon2id
    except ImportError as err:
        raise PrimitivesUnavailable(
            f"Cryptographic library unavailable: {err}"
        ) from err

    if not callable(getattr(low_level, "hash_secret_raw", None)):
        raise PrimitivesUnavailable("Argon2id password hashing is not available")
    if not hasattr(argon2, "PasswordHasher"):
        raise PrimitivesUnavailable("Argon2id password hash strings are not available")
    if not callable(
        getattr(nacl.bindings, "crypto_aead_xchacha20poly1305_ietf_encrypt", None)
    ):
        raise PrimitivesUnavailable("XChaCha20-Poly1305 is not available")

    return Primitives(
        low_level=low_level,
        password_hasher_cls=argon2.PasswordHasher,
        argon2_type=low_level.Type,
        argon2_exceptions=argon2_exceptions,
        aead=nacl.bindings,
        crypto_error=CryptoError,
        random=nacl.utils.random,
        salt_bytes=argon2id.SALTBYTES,
        opslimit_moderate=argon2id.OPSLIMIT_MODERATE,
        memlimit_moderate=argon2id.MEMLIMIT_MODERATE,
    )


class PrimitiveProvider:
    """Lazily initialized, process-wide handle to the crypto libraries.

    Concurrent first callers wait on the same initialization; a failed
    initialization is remembered and re-raised to every later caller.
    """

    def __init__(self, loader: Callable[[], Primitives] = load_primitives):
        self._loader = loader
        self._lock = threading.Lock()
        self._handle: Optional[Primitives] = None
        self._error: Optional[PrimitivesUnavailable] = None

    async def ready(self) -> Primitives:
        """Return the primitives handle, initializing it on first use."""
        if self._handle is not None:
            return self._handle
        return await asyncio.to_thread(self._initialize)

    def ready_sync(self) -> Optional[Primitives]:
        """Return the handle without waiting, ``None`` if not yet initialized."""
        return self._handle

    @property
    def failed(self) -> bool:
        return self._error is not None

    def _initialize(self) -> Primitives:
        with self._lock:
            if self._handle is None and self._error is None:
                try:
                    self._handle = self._loader()
                    logger.debug("Vault primitives initialized")
                except PrimitivesUnavailable as err:
                    self._error = err
                except Exception as err:
                    self._error = PrimitivesUnavailable(
                        f"Cryptographic library failed to initialize: {err}"
                    )
                    self._error.__cause__ = err
                if self._error is not None:
                    logger.error("Failed to initialize vault primitives: %s", self._error)
            if self._error is not None:
                raise self._error
            return self._handle


default_provider = PrimitiveProvider()
