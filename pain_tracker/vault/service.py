"""
VaultService — Passphrase-derived key lifecycle and encryption facade.

Provides the public API of the local vault:
- ``initialize()``: load metadata and probe the crypto libraries
- ``setup_passphrase(passphrase)``: create metadata and unlock
- ``unlock(passphrase)`` / ``lock()``: derive or wipe the in-memory key
- ``clear_all()``: forget the vault entirely
- ``encrypt_string`` / ``decrypt_string`` / ``encrypt_bytes`` / ``decrypt_bytes``
- ``subscribe(listener)``: synchronous status notifications

State machine::

    uninitialized --setup--> unlocked
    locked --unlock--> unlocking --ok--> unlocked
                                 --fail--> locked
    unlocked --unlock ok--> unlocked (key replaced)
    unlocked --unlock fail--> unlocked (key kept)
    unlocked --lock--> locked
    any --clear_all--> uninitialized
    any --primitive init failure--> error (terminal)

Security Note:
    Never log passphrases, keys, plaintext or ciphertext. The key lives in a
    ``bytearray`` wiped on lock, clear, garbage collection and interpreter
    exit. Wiping is best-effort in a managed runtime: the AEAD binding only
    accepts immutable ``bytes``, so every encrypt/decrypt call hands it a
    short-lived copy of the key that cannot be zeroed.
"""
import asyncio
import binascii
import logging
import weakref
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from .config import DEFAULT_SALT_LENGTH, VAULT_VERSION, VaultConfig
from .crypto import (
    b64decode,
    b64encode,
    decode_envelope,
    encode_envelope,
    parse_envelope,
    to_bytes,
)
from .exceptions import (
    AlreadyConfigured,
    DecryptionFailed,
    IncorrectPassphrase,
    InvalidKey,
    KeyNotSet,
    NotAnEnvelope,
    NotConfigured,
    PersistFailure,
    PrimitivesNotReady,
    PrimitivesUnavailable,
    StorageError,
    UnlockAborted,
    VerificationFailed,
    WeakPassphrase,
)
from .metadata import (
    CipherParams,
    DerivationParams,
    MetadataStore,
    VaultMetadata,
    VerificationParams,
    utc_timestamp,
)
from .migration import sweep_legacy_entries
from .primitives import PrimitiveProvider, Primitives, default_provider

if TYPE_CHECKING:
    from ..storage import ByteStore, SecureStorage

logger = logging.getLogger("pain_tracker.vault")


class VaultState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOCKED = "locked"
    UNLOCKING = "unlocking"
    UNLOCKED = "unlocked"
    ERROR = "error"


class VaultStatus(BaseModel):
    """Immutable snapshot handed to subscribers."""

    model_config = ConfigDict(frozen=True)

    state: VaultState = VaultState.UNINITIALIZED
    metadata: Optional[VaultMetadata] = None
    primitives_ready: bool = False


Listener = Callable[[VaultStatus], None]


class _KeyHolder:
    """Sole owner of the runtime key buffer."""

    def __init__(self) -> None:
        self.key: Optional[bytearray] = None

    def set(self, key: bytearray) -> None:
        self.wipe()
        self.key = key

    def wipe(self) -> None:
        if self.key is not None:
            Primitives.memzero(self.key)
            self.key = None


class VaultService:
    """Encrypted local vault bound to a passphrase.

    ``setup_passphrase`` and ``unlock`` are serialized by a single-flight
    lock. ``lock``/``clear_all`` are synchronous and invalidate any key
    derivation still in flight.
    """

    def __init__(
        self,
        storage: "SecureStorage",
        config: Optional[VaultConfig] = None,
        provider: Optional[PrimitiveProvider] = None,
    ):
        self._config = config or VaultConfig()
        self._storage = storage
        self._hooks = storage.hooks
        self._provider = provider or default_provider
        self._metadata_store = MetadataStore(storage, self._config.metadata_key)
        self._status = VaultStatus()
        self._listeners: list[Listener] = []
        self._guard = asyncio.Lock()
        self._initialized = False
        self._epoch = 0
        self._holder = _KeyHolder()
        # Runs on garbage collection and at interpreter exit.
        self._finalizer = weakref.finalize(self, self._holder.wipe)
        if storage.namespace != self._config.namespace:
            logger.warning(
                "Storage namespace %s differs from configured namespace %s",
                storage.namespace, self._config.namespace,
            )

    @classmethod
    def create(
        cls,
        backend: "ByteStore",
        config: Optional[VaultConfig] = None,
        provider: Optional[PrimitiveProvider] = None,
    ) -> "VaultService":
        """Build a vault and its namespaced storage over a byte store."""
        from ..storage import SecureStorage

        config = config or VaultConfig()
        storage = SecureStorage(backend, namespace=config.namespace)
        return cls(storage, config=config, provider=provider)

    # ------------------------------------------------------------------
    # Status and subscriptions
    # ------------------------------------------------------------------

    @property
    def status(self) -> VaultStatus:
        return self._status

    @property
    def storage(self) -> "SecureStorage":
        return self._storage

    @property
    def config(self) -> VaultConfig:
        return self._config

    def is_unlocked(self) -> bool:
        return self._status.state == VaultState.UNLOCKED and self._holder.key is not None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; it is called right away with the current status.

        Returns:
            A function that unsubscribes the listener.
        """
        self._listeners.append(listener)
        self._notify(listener, self._status)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _notify(self, listener: Listener, status: VaultStatus) -> None:
        try:
            listener(status)
        except Exception:
            logger.exception("Vault status listener failed")

    def _set_status(self, **changes: Any) -> None:
        self._status = self._status.model_copy(update=changes)
        status = self._status
        for listener in list(self._listeners):
            self._notify(listener, status)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> VaultStatus:
        """Probe the crypto libraries and load metadata (once)."""
        if self._initialized:
            return self._status
        try:
            await self._provider.ready()
        except PrimitivesUnavailable as err:
            logger.error("Vault unavailable, crypto initialization failed: %s", err)
            self._set_status(state=VaultState.ERROR, primitives_ready=False)
            return self._status

        metadata = self._metadata_store.load()
        state = VaultState.LOCKED if metadata is not None else VaultState.UNINITIALIZED
        self._initialized = True
        self._set_status(state=state, metadata=metadata, primitives_ready=True)
        return self._status

    async def _require_primitives(self) -> Primitives:
        if self._status.state == VaultState.ERROR:
            raise PrimitivesUnavailable("Vault crypto initialization failed")
        try:
            return await self._provider.ready()
        except PrimitivesUnavailable:
            self._set_status(state=VaultState.ERROR, primitives_ready=False)
            raise

    def _check_epoch(self, epoch: int) -> None:
        if epoch != self._epoch:
            raise UnlockAborted("Vault was locked during key derivation")

    async def setup_passphrase(self, passphrase: str) -> None:
        """Create vault metadata from a new passphrase and unlock.

        Raises:
            WeakPassphrase: Passphrase shorter than the configured minimum.
            PrimitivesUnavailable: Crypto libraries failed to initialize.
            AlreadyConfigured: Metadata already exists.
            PersistFailure: Metadata could not be written; vault stays locked.
            UnlockAborted: ``lock()``/``clear_all()`` ran during derivation.
        """
        minimum = self._config.min_passphrase_length
        if not passphrase or len(passphrase) < minimum:
            raise WeakPassphrase(f"Passphrase must be at least {minimum} characters.")

        async with self._guard:
            await self.initialize()
            primitives = await self._require_primitives()
            if self._metadata_store.load() is not None:
                raise AlreadyConfigured("Vault is already configured; clear it first.")

            salt_length = primitives.salt_bytes
            if not isinstance(salt_length, int) or salt_length <= 0:
                logger.warning(
                    "Invalid salt length %r reported by crypto library, using %d bytes",
                    salt_length, DEFAULT_SALT_LENGTH,
                )
                salt_length = DEFAULT_SALT_LENGTH
            opslimit = self._config.opslimit or primitives.opslimit_moderate
            memlimit = self._config.memlimit or primitives.memlimit_moderate
            key_length = primitives.key_bytes
            salt = primitives.random_bytes(salt_length)

            epoch = self._epoch
            key = await asyncio.to_thread(
                primitives.derive_key, passphrase, salt, opslimit, memlimit, key_length,
            )
            try:
                verification_hash = await asyncio.to_thread(
                    primitives.hash_password, passphrase, opslimit, memlimit,
                )
                self._check_epoch(epoch)
                now = utc_timestamp()
                metadata = VaultMetadata(
                    version=VAULT_VERSION,
                    created_at=now,
                    updated_at=now,
                    derivation=DerivationParams(
                        salt=b64encode(salt),
                        opslimit=opslimit,
                        memlimit=memlimit,
                        key_length=key_length,
                    ),
                    verification=VerificationParams(hash=verification_hash),
                    cipher=CipherParams(nonce_length=primitives.nonce_bytes),
                )
                try:
                    self._metadata_store.save(metadata)
                except StorageError as err:
                    logger.error("Failed to persist vault metadata: %s", err)
                    raise PersistFailure("Failed to persist vault metadata.") from err
            except BaseException:
                Primitives.memzero(key)
                raise

            self._activate(key, metadata)
            logger.info("Vault passphrase initialized")

    async def unlock(self, passphrase: str) -> None:
        """Verify the passphrase, re-derive the key and unlock.

        When already unlocked the current key stays active until the new
        derivation succeeds; a failed attempt leaves the vault unlocked.

        Raises:
            NotConfigured: No vault metadata exists.
            IncorrectPassphrase: Passphrase does not match.
            VerificationFailed: Password-hash library error (same message).
            UnlockAborted: ``lock()``/``clear_all()`` ran during derivation.
        """
        if not passphrase:
            raise IncorrectPassphrase()

        async with self._guard:
            await self.initialize()
            primitives = await self._require_primitives()
            metadata = self._status.metadata
            if metadata is None:
                raise NotConfigured("Vault not configured.")

            was_unlocked = self.is_unlocked()
            epoch = self._epoch
            if not was_unlocked:
                self._set_status(state=VaultState.UNLOCKING)
            try:
                key = await self._verify_and_derive(primitives, metadata, passphrase, epoch)
            except BaseException:
                if epoch == self._epoch:
                    logger.warning("Vault unlock attempt failed")
                    if not was_unlocked:
                        self._set_status(state=VaultState.LOCKED)
                raise

            self._activate(key, metadata)
            logger.info("Vault unlocked")

    async def _verify_and_derive(
        self,
        primitives: Primitives,
        metadata: VaultMetadata,
        passphrase: str,
        epoch: int,
    ) -> bytearray:
        try:
            valid = await asyncio.to_thread(
                primitives.verify_password, metadata.verification.hash, passphrase,
            )
        except VerificationFailed:
            raise
        except Exception as err:
            raise VerificationFailed() from err
        if not valid:
            raise IncorrectPassphrase()
        self._check_epoch(epoch)

        derivation = metadata.derivation
        try:
            key = await asyncio.to_thread(
                primitives.derive_key,
                passphrase,
                derivation.salt_bytes,
                derivation.opslimit,
                derivation.memlimit,
                derivation.key_length,
            )
        except Exception as err:
            raise VerificationFailed() from err
        if epoch != self._epoch:
            Primitives.memzero(key)
            raise UnlockAborted("Vault was locked during key derivation")
        return key

    def _activate(self, key: bytearray, metadata: VaultMetadata) -> None:
        self._holder.set(key)
        self._hooks.install(self, self.encrypt_string, self.decrypt_string)
        self._set_status(state=VaultState.UNLOCKED, metadata=metadata, primitives_ready=True)
        self.migrate_legacy_storage()

    def lock(self) -> None:
        """Wipe the key, revoke the encryption hooks and move to ``locked``.

        No-op on the state when uninitialized or in error. Never raises.
        """
        self._epoch += 1
        self._holder.wipe()
        self._hooks.revoke(self)
        if self._status.state in (VaultState.UNLOCKED, VaultState.UNLOCKING):
            self._set_status(state=VaultState.LOCKED)
            logger.info("Vault locked")

    def clear_all(self, purge_entries: bool = False) -> None:
        """Delete vault metadata and return to ``uninitialized``.

        Args:
            purge_entries: Also remove every entry in the storage namespace.

        Raises:
            StorageError: If the metadata could not be removed; the vault
                stays locked in that case.
        """
        self.lock()
        self._metadata_store.remove()
        if purge_entries:
            removed = self._storage.clear()
            logger.info("Vault purge removed %d entries", removed)
        if self._status.state != VaultState.ERROR:
            self._set_status(state=VaultState.UNINITIALIZED, metadata=None)
        logger.info("Vault cleared")

    def close(self) -> None:
        self.lock()

    def __enter__(self) -> "VaultService":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.lock()

    # ------------------------------------------------------------------
    # Legacy migration
    # ------------------------------------------------------------------

    def migrate_legacy_storage(self, dry_run: bool = False) -> Optional[dict]:
        """Encrypt plaintext entries left from before the vault existed.

        Returns:
            Sweep stats, or None while locked.
        """
        metadata = self._status.metadata
        if not self.is_unlocked() or metadata is None:
            return None
        stats = sweep_legacy_entries(
            self._storage,
            self.encrypt_string,
            skip=(self._metadata_store.storage_key,),
            dry_run=dry_run,
        )
        if dry_run or not (stats["reencrypted"] or stats["skipped"]):
            return stats

        updated = metadata.with_migration(completed=stats["skipped"] == 0)
        try:
            self._metadata_store.save(updated)
        except StorageError as err:
            logger.warning("Failed to update vault metadata after migration: %s", err)
        self._set_status(metadata=updated)
        return stats

    # ------------------------------------------------------------------
    # Encryption facade
    # ------------------------------------------------------------------

    def _active_key(self) -> tuple[Primitives, bytes]:
        key = self._holder.key
        if key is None:
            raise KeyNotSet("Vault is locked.")
        primitives = self._provider.ready_sync()
        if primitives is None or not self._status.primitives_ready:
            raise PrimitivesNotReady("Crypto primitives are not ready.")
        if len(key) != primitives.key_bytes:
            raise InvalidKey(
                f"Held key is {len(key)} bytes, cipher requires {primitives.key_bytes}"
            )
        return primitives, bytes(key)

    def encrypt_string(self, message: Any) -> str:
        """Encrypt a string, byte buffer or JSON-serializable value into an envelope.

        Byte buffers must hold UTF-8 text: ``decrypt_string`` returns text and
        hands back the envelope unchanged for any other payload. Use
        ``encrypt_bytes``/``decrypt_bytes`` for arbitrary binary data.
        """
        primitives, key = self._active_key()
        data = to_bytes(message)
        nonce = primitives.random_bytes(primitives.nonce_bytes)
        ciphertext = primitives.aead_encrypt(data, nonce, key)
        return encode_envelope(nonce, ciphertext)

    def _open(self, primitives: Primitives, key: bytes, envelope: dict) -> str:
        try:
            nonce, ciphertext = decode_envelope(envelope)
        except (binascii.Error, ValueError) as err:
            raise DecryptionFailed("Envelope is not valid base64") from err
        if len(nonce) != primitives.nonce_bytes:
            raise DecryptionFailed("Envelope nonce has the wrong length")
        plaintext = primitives.aead_decrypt(ciphertext, nonce, key)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as err:
            raise DecryptionFailed("Decrypted payload is not UTF-8 text") from err

    def decrypt_string(self, payload: Any) -> Any:
        """Decrypt an envelope, returning ``payload`` unchanged when it is not
        an envelope or fails to decrypt.

        Use ``decrypt_string_strict`` to tell those cases apart.
        """
        primitives, key = self._active_key()
        envelope = parse_envelope(payload)
        if envelope is None:
            return payload
        try:
            return self._open(primitives, key, envelope)
        except DecryptionFailed as err:
            logger.debug("Envelope decryption failed, returning input: %s", err)
            return payload

    def decrypt_string_strict(self, payload: Any) -> str:
        """Decrypt an envelope.

        Raises:
            NotAnEnvelope: Payload does not have the envelope shape.
            DecryptionFailed: Wrong key, tampering or corrupt data.
        """
        primitives, key = self._active_key()
        envelope = parse_envelope(payload)
        if envelope is None:
            raise NotAnEnvelope("Payload is not an encrypted envelope")
        return self._open(primitives, key, envelope)

    def encrypt_bytes(self, data: bytes) -> dict[str, str]:
        """Encrypt raw bytes, returning base64 ``nonce`` and ``cipher``."""
        primitives, key = self._active_key()
        nonce = primitives.random_bytes(primitives.nonce_bytes)
        ciphertext = primitives.aead_encrypt(bytes(data), nonce, key)
        return {"nonce": b64encode(nonce), "cipher": b64encode(ciphertext)}

    def decrypt_bytes(self, payload: Mapping[str, str]) -> bytes:
        """Decrypt a payload produced by ``encrypt_bytes``.

        Raises:
            DecryptionFailed: Malformed payload, wrong key or tampering.
        """
        primitives, key = self._active_key()
        try:
            nonce = b64decode(payload["nonce"])
            ciphertext = b64decode(payload["cipher"])
        except (KeyError, TypeError, AttributeError, binascii.Error, ValueError) as err:
            raise DecryptionFailed("Malformed byte payload") from err
        if len(nonce) != primitives.nonce_bytes:
            raise DecryptionFailed("Payload nonce has the wrong length")
        return primitives.aead_decrypt(ciphertext, nonce, key)
