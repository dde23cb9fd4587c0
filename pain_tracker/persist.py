"""
Vault-gated snapshot persistence for the application store.

``EncryptedPersistStorage`` is the storage adapter a persisted store reads
and writes its ``{"state": ..., "version": n}`` snapshot through. Snapshots
are encoded with jsonpickle, encrypted by the vault and stored under
``persist:<name>``.

While the vault is locked there is no data: ``get_item`` returns None and
``set_item`` skips the write. Stored ciphertext is never deleted because it
failed to decrypt. A plaintext snapshot left in the encrypted slot is
re-encrypted in place, and legacy plaintext copies (raw keys in a separate
store, or entry arrays kept in the vault namespace) are only removed after
the encrypted snapshot was written.
"""
import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

import jsonpickle
from jsonpickle.unpickler import loadclass
import orjson
from pydantic import BaseModel as PydanticBaseModel

from .vault.exceptions import DecryptionFailed, NotAnEnvelope, VaultError

if TYPE_CHECKING:
    from .storage import ByteStore, SecureStorage
    from .vault.service import VaultService

logger = logging.getLogger("pain_tracker.storage")

Snapshot = dict[str, Any]


class PydanticHandler(jsonpickle.handlers.BaseHandler):
    """PydanticHandler.
    Flattens Pydantic models held in store state to their field values
    and rebuilds them with ``model_construct`` (snapshots are authenticated).
    """
    def flatten(self, obj, data):
        data['__dict__'] = self.context.flatten(obj.__dict__, reset=False)
        return data

    def restore(self, obj):
        module_and_type = obj['py/object']
        mdl = loadclass(module_and_type)
        fields = self.context.restore(obj['__dict__'], reset=False)
        return mdl.model_construct(**fields)

jsonpickle.handlers.registry.register(PydanticBaseModel, PydanticHandler, base=True)


def _is_snapshot(value: Any) -> bool:
    return isinstance(value, dict) and "state" in value


class EncryptedPersistStorage:
    """Encrypted snapshot storage for one named store.

    Operations on an instance are serialized, so a write queued before a
    read always lands first.
    """

    def __init__(
        self,
        name: str,
        vault: "VaultService",
        backend: "ByteStore",
        *,
        key: Optional[str] = None,
        legacy: Optional["ByteStore"] = None,
        legacy_entry_keys: Iterable[str] = (),
        build_migrated_state: Optional[Callable[[list], Snapshot]] = None,
        secure: Optional["SecureStorage"] = None,
        secure_entry_keys: Iterable[str] = (),
    ):
        self.name = name
        self.key = key or f"persist:{name}"
        self._vault = vault
        self._backend = backend
        self._legacy = legacy
        self._legacy_entry_keys = tuple(legacy_entry_keys)
        self._build_migrated_state = build_migrated_state
        self._secure = secure
        self._secure_entry_keys = tuple(secure_entry_keys)
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Snapshot codec
    # ------------------------------------------------------------------

    @staticmethod
    def encode(snapshot: Snapshot) -> str:
        try:
            return jsonpickle.encode(snapshot)
        except Exception as err:
            raise RuntimeError(err) from err

    @staticmethod
    def decode(text: str) -> Optional[Snapshot]:
        """Decode an authenticated snapshot; None when malformed."""
        try:
            snapshot = jsonpickle.decode(text)
        except Exception as err:
            logger.warning("Failed to decode snapshot: %s", err)
            return None
        return snapshot if _is_snapshot(snapshot) else None

    @staticmethod
    def _parse_plain(raw: str) -> Any:
        # Legacy data is unauthenticated: plain JSON only, never jsonpickle.
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError:
            return None

    # ------------------------------------------------------------------
    # Encrypted snapshot helpers
    # ------------------------------------------------------------------

    def _write_snapshot(self, snapshot: Snapshot) -> bool:
        if not self._vault.is_unlocked():
            return False
        try:
            encrypted = self._vault.encrypt_string(self.encode(snapshot))
            self._backend.set(self.key, encrypted)
        except (VaultError, RuntimeError) as err:
            logger.warning("Failed to persist snapshot %s: %s", self.name, err)
            return False
        return True

    def _read_legacy_entries(self) -> Optional[list]:
        # Entries kept in the vault namespace win over raw plaintext keys.
        if self._secure is not None:
            for entry_key in self._secure_entry_keys:
                try:
                    value = self._secure.get(entry_key, encrypt=True)
                except VaultError as err:
                    logger.warning("Failed to read legacy entries %s: %s", entry_key, err)
                    continue
                if isinstance(value, list):
                    return value
        if self._legacy is None:
            return None
        for entry_key in self._legacy_entry_keys:
            raw = self._legacy.get(entry_key)
            if not raw:
                continue
            parsed = self._parse_plain(raw)
            if isinstance(parsed, list):
                return parsed
        return None

    def _remove_legacy(self, store: Any, legacy_key: str) -> None:
        try:
            store.remove(legacy_key)
        except VaultError as err:
            logger.warning("Failed to remove legacy copy %s: %s", legacy_key, err)

    def _clear_legacy(self) -> None:
        if self._secure is not None:
            for entry_key in self._secure_entry_keys:
                self._remove_legacy(self._secure, entry_key)
        if self._legacy is not None:
            for legacy_key in (self.name, *self._legacy_entry_keys):
                self._remove_legacy(self._legacy, legacy_key)

    def _migrate_plain(self, raw: str) -> Optional[Snapshot]:
        """Re-encrypt a plaintext snapshot found in the encrypted slot."""
        parsed = self._parse_plain(raw)
        if not _is_snapshot(parsed):
            logger.warning("Stored snapshot %s is neither encrypted nor a snapshot", self.name)
            return None
        if self._write_snapshot(parsed):
            logger.info("Encrypted plaintext snapshot %s in place", self.name)
        return parsed

    def _migrate_legacy(self) -> Optional[Snapshot]:
        if self._legacy is not None:
            raw = self._legacy.get(self.name)
            if raw:
                parsed = self._parse_plain(raw)
                if _is_snapshot(parsed):
                    if self._write_snapshot(parsed):
                        self._clear_legacy()
                        logger.info("Migrated plaintext snapshot %s", self.name)
                    return parsed
                logger.warning("Discarding corrupt legacy snapshot %s", self.name)
                self._remove_legacy(self._legacy, self.name)

        entries = self._read_legacy_entries()
        if entries is not None and self._build_migrated_state is not None:
            migrated = self._build_migrated_state(entries)
            if self._write_snapshot(migrated):
                self._clear_legacy()
                logger.info(
                    "Migrated %d legacy entries into snapshot %s", len(entries), self.name,
                )
            return migrated
        return None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_item(self) -> Optional[Snapshot]:
        """Return the decrypted snapshot, or None when locked or absent."""
        async with self._lock:
            if not self._vault.is_unlocked():
                logger.debug("Snapshot %s unavailable while vault is locked", self.name)
                return None

            raw = self._backend.get(self.key)
            if isinstance(raw, str):
                try:
                    text = self._vault.decrypt_string_strict(raw)
                except NotAnEnvelope:
                    migrated = self._migrate_plain(raw)
                    if migrated is not None:
                        return migrated
                except DecryptionFailed as err:
                    # Keep the payload: it may decrypt under the right key later.
                    logger.warning("Failed to decrypt snapshot %s: %s", self.name, err)
                    return None
                except VaultError as err:
                    logger.warning("Snapshot %s unavailable: %s", self.name, err)
                    return None
                else:
                    return self.decode(text)

            return self._migrate_legacy()

    async def set_item(self, snapshot: Snapshot) -> bool:
        """Encrypt and store a snapshot.

        Returns:
            True if written, False when the vault is locked or the write failed.
        """
        async with self._lock:
            if not self._vault.is_unlocked():
                logger.debug("Skipping write of %s while vault is locked", self.name)
                return False
            if not self._write_snapshot(snapshot):
                return False
            self._clear_legacy()
            return True

    async def remove_item(self) -> None:
        async with self._lock:
            try:
                self._backend.remove(self.key)
            except VaultError as err:
                logger.warning("Failed to remove snapshot %s: %s", self.name, err)
            if self._legacy is not None:
                self._remove_legacy(self._legacy, self.name)
