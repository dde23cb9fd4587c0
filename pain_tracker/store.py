from typing import Any, Callable, Optional
from datetime import date, datetime
from collections.abc import Iterator, Mapping, MutableMapping
import logging
from pydantic import BaseModel as PydanticBaseModel
from .persist import EncryptedPersistStorage


logger = logging.getLogger("pain_tracker.storage")

Migrate = Callable[[dict, int], dict]


class PersistedStore(MutableMapping[str, Any]):
    """Application state dict-like object backed by the encrypted vault.

    Supports both serializable state (stored in _data and persisted) and
    in-memory objects (stored in _objects, never persisted).

    Rehydration only replaces state when a snapshot is actually available:
    while the vault is locked the in-memory state is left untouched rather
    than reset to defaults.
    """

    def __init__(
        self,
        storage: EncryptedPersistStorage,
        *,
        initial: Optional[Mapping[str, Any]] = None,
        version: int = 0,
        migrate: Optional[Migrate] = None,
    ) -> None:
        self._storage = storage
        self._version = version
        self._migrate = migrate
        self._data: dict[str, Any] = dict(initial or {})
        self._objects: dict[str, Any] = {}
        self._changed = False
        self._hydrated = False

    def __repr__(self) -> str:
        return (
            f'<PersistedStore [{self._storage.name}, v{self._version}, '
            f'hydrated:{self._hydrated}] keys={list(self._data.keys())}, '
            f'objects={list(self._objects.keys())}>'
        )

    # --- Serialization helpers ---

    def _is_serializable(self, value: Any) -> bool:
        """Check whether a value survives the snapshot round trip.

        Arbitrary class instances stay in memory only.
        """
        if value is None or isinstance(value, (bool, int, float, str, bytes)):
            return True
        if isinstance(value, dict):
            return all(self._is_serializable(v) for v in value.values())
        if isinstance(value, (list, tuple, set, frozenset)):
            return all(self._is_serializable(v) for v in value)
        if isinstance(value, PydanticBaseModel):
            return True
        if isinstance(value, (datetime, date)):
            return True
        return False

    def _set_value(self, key: str, value: Any) -> None:
        if self._is_serializable(value):
            self._objects.pop(key, None)
            self._data[key] = value
            self._changed = True
        else:
            self._data.pop(key, None)
            self._objects[key] = value

    def _del_value(self, key: str) -> None:
        deleted = False
        if key in self._objects:
            del self._objects[key]
            deleted = True
        if key in self._data:
            del self._data[key]
            self._changed = True
            deleted = True
        if not deleted:
            raise KeyError(key)

    # --- Properties ---

    @property
    def version(self) -> int:
        return self._version

    @property
    def hydrated(self) -> bool:
        return self._hydrated

    @property
    def is_changed(self) -> bool:
        return self._changed

    @property
    def empty(self) -> bool:
        return not self._data and not self._objects

    def state(self) -> dict:
        """Return only serializable state (for persistence)."""
        return self._data

    def objects(self) -> dict:
        """Return in-memory objects (not persisted)."""
        return self._objects

    def snapshot(self) -> dict:
        return {"state": dict(self._data), "version": self._version}

    # --- Persistence ---

    async def rehydrate(self) -> bool:
        """Load the stored snapshot into memory.

        Returns:
            True if state was replaced, False when no data was available
            (vault locked, nothing stored, or an unusable snapshot).
        """
        snapshot = await self._storage.get_item()
        if snapshot is None:
            logger.debug("No snapshot available for %s, keeping in-memory state", self._storage.name)
            return False
        state = snapshot.get("state")
        if not isinstance(state, dict):
            logger.warning("Ignoring snapshot for %s without a state mapping", self._storage.name)
            return False
        stored_version = snapshot.get("version", 0)
        if stored_version != self._version:
            if self._migrate is None:
                logger.warning(
                    "Snapshot %s version %s differs from %s and no migration is set",
                    self._storage.name, stored_version, self._version,
                )
                return False
            state = self._migrate(dict(state), stored_version)
        self._data = dict(state)
        self._changed = False
        self._hydrated = True
        return True

    async def persist(self) -> bool:
        """Write the serializable state; unchanged flag is kept when skipped."""
        written = await self._storage.set_item(self.snapshot())
        if written:
            self._changed = False
        return written

    async def clear_storage(self) -> None:
        await self._storage.remove_item()

    def invalidate(self) -> None:
        """Clear all in-memory state and objects."""
        self._changed = True
        self._data = {}
        self._objects = {}

    # --- Magic Methods ---

    def __len__(self) -> int:
        return len(self._data) + len(self._objects)

    def __iter__(self) -> Iterator[str]:
        yield from self._data
        for key in self._objects:
            if key not in self._data:
                yield key

    def __contains__(self, key: object) -> bool:
        return key in self._objects or key in self._data

    def __getitem__(self, key: str) -> Any:
        if key in self._objects:
            return self._objects[key]
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._set_value(key, value)

    def __delitem__(self, key: str) -> None:
        self._del_value(key)
