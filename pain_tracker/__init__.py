"""Pain Tracker local persistence with an encrypted vault."""
from .version import __version__
from .storage import ByteStore, MemoryByteStore, FileByteStore, SecureStorage
from .persist import EncryptedPersistStorage
from .store import PersistedStore

__all__ = [
    "__version__",
    "ByteStore",
    "MemoryByteStore",
    "FileByteStore",
    "SecureStorage",
    "EncryptedPersistStorage",
    "PersistedStore",
]
