"""
Local key-value storage for client-persisted state.

``ByteStore`` implementations hold raw strings by key (the equivalent of a
browser's localStorage). ``SecureStorage`` layers namespaced JSON values on
top and routes encrypted values through the vault's ``EncryptionHooks``.

Security Note:
    Never log stored values. Only log key names and operations.
"""
import os
import logging
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import orjson

from .vault.crypto import is_envelope
from .vault.exceptions import EncryptionUnavailable, StorageError
from .vault.hooks import EncryptionHooks
from .vault.config import DEFAULT_NAMESPACE

logger = logging.getLogger("pain_tracker.storage")


class ByteStore(ABC):
    """String key-value store collaborator."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored string or None."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a string.

        Raises:
            StorageError: If the value could not be written.
        """

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove a key; missing keys are ignored."""

    @abstractmethod
    def keys(self) -> list[str]:
        """Snapshot of all keys currently stored."""


class MemoryByteStore(ByteStore):
    """In-process dictionary store."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._items: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise StorageError(f"Value for {key!r} must be a string")
        self._items[key] = value

    def remove(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._items.keys())

    def __len__(self) -> int:
        return len(self._items)


class FileByteStore(ByteStore):
    """Store persisted as a single JSON document on disk.

    Every write replaces the file atomically; a corrupt file is treated
    as empty.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._items: dict[str, str] = self._read()

    def _read(self) -> dict[str, str]:
        try:
            data = orjson.loads(self.path.read_bytes())
        except FileNotFoundError:
            return {}
        except (OSError, orjson.JSONDecodeError) as err:
            logger.warning("Ignoring unreadable store file %s: %s", self.path, err)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed store file %s", self.path)
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _flush(self, items: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(orjson.dumps(items))
            os.replace(tmp, self.path)
        except OSError:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise StorageError(f"Value for {key!r} must be a string")
        with self._lock:
            items = dict(self._items)
            items[key] = value
            try:
                self._flush(items)
            except OSError as err:
                raise StorageError(f"Failed to write {key!r}: {err}") from err
            self._items = items

    def remove(self, key: str) -> None:
        with self._lock:
            if key not in self._items:
                return
            items = dict(self._items)
            del items[key]
            try:
                self._flush(items)
            except OSError as err:
                raise StorageError(f"Failed to remove {key!r}: {err}") from err
            self._items = items

    def keys(self) -> list[str]:
        return list(self._items.keys())


class SecureStorage:
    """Namespaced JSON storage with optional vault encryption.

    Values written with ``encrypt=True`` go through the encryption hooks.
    Encrypted values read while the hooks are revoked yield ``default``:
    storage fails closed and never hands out ciphertext as data.
    """

    def __init__(
        self,
        backend: ByteStore,
        namespace: str = DEFAULT_NAMESPACE,
        hooks: Optional[EncryptionHooks] = None,
    ):
        self.backend = backend
        self.namespace = namespace
        self.hooks = hooks if hooks is not None else EncryptionHooks()

    def full_key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def keys(self) -> list[str]:
        """Unprefixed keys of every entry inside the namespace."""
        size = len(self.namespace)
        return [k[size:] for k in self.backend.keys() if k.startswith(self.namespace)]

    def full_keys(self) -> list[str]:
        return [k for k in self.backend.keys() if k.startswith(self.namespace)]

    def get_raw(self, key: str) -> Optional[str]:
        return self.backend.get(self.full_key(key))

    def set_raw(self, key: str, value: str) -> None:
        self.backend.set(self.full_key(key), value)

    def get(self, key: str, default: Any = None, encrypt: bool = False) -> Any:
        """Read a JSON value.

        Envelope values are decrypted when the hooks are installed. Values
        that are not JSON are returned as the raw string.
        """
        raw = self.get_raw(key)
        if raw is None:
            return default
        text = raw
        if is_envelope(raw):
            if not self.hooks.available:
                logger.debug("Encrypted entry %s unavailable while locked", key)
                return default
            text = self.hooks.decrypt(raw)
            if is_envelope(text):
                logger.warning("Failed to decrypt storage entry %s", key)
                return default
        elif encrypt:
            logger.debug("Entry %s is still plaintext", key)
        try:
            return orjson.loads(text)
        except orjson.JSONDecodeError:
            return text

    def set(self, key: str, value: Any, encrypt: bool = False) -> None:
        """Write a JSON value.

        Raises:
            EncryptionUnavailable: If ``encrypt`` is set while the vault is locked.
            StorageError: If the backend rejects the write.
        """
        try:
            text = orjson.dumps(value).decode("utf-8")
        except orjson.JSONEncodeError as err:
            raise StorageError(f"Value for {key!r} is not serializable: {err}") from err
        if encrypt:
            if not self.hooks.available:
                raise EncryptionUnavailable(
                    f"Refusing to write {key!r} in plaintext while the vault is locked"
                )
            text = self.hooks.encrypt(text)
        self.set_raw(key, text)

    def remove(self, key: str) -> None:
        self.backend.remove(self.full_key(key))

    def clear(self, keep: Iterable[str] = ()) -> int:
        """Remove every namespaced entry except the full keys in ``keep``."""
        preserved = set(keep)
        removed = 0
        for full_key in self.full_keys():
            if full_key in preserved:
                continue
            self.backend.remove(full_key)
            removed += 1
        return removed
