"""Shared fixtures for the vault test-suite.

KDF cost is lowered through ``VaultConfig`` so each Argon2id derivation
takes milliseconds instead of the moderate preset's ~1 second.
"""
import pytest
import pytest_asyncio

from pain_tracker.storage import MemoryByteStore, SecureStorage
from pain_tracker.vault import VaultConfig, VaultService, PrimitiveProvider
from pain_tracker.vault.exceptions import StorageError

PASSPHRASE = "correct horse battery staple"
OTHER_PASSPHRASE = "incorrect horse battery staple"


class FlakyByteStore(MemoryByteStore):
    """Memory store whose writes fail for selected keys."""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.fail_keys: set[str] = set()
        self.writes: list[str] = []

    def set(self, key: str, value: str) -> None:
        if key in self.fail_keys:
            raise StorageError(f"write refused for {key}")
        self.writes.append(key)
        super().set(key, value)


@pytest.fixture
def fast_config():
    """Vault config with the cheapest Argon2id parameters."""
    return VaultConfig(opslimit=1, memlimit=64 * 1024)


@pytest.fixture
def backend():
    return FlakyByteStore()


@pytest.fixture
def storage(backend):
    return SecureStorage(backend)


@pytest.fixture
def provider():
    return PrimitiveProvider()


@pytest.fixture
def vault(storage, fast_config, provider):
    """A fresh, uninitialized vault over in-memory storage."""
    return VaultService(storage, config=fast_config, provider=provider)


@pytest_asyncio.fixture
async def unlocked_vault(vault):
    """A vault set up with ``PASSPHRASE`` and left unlocked."""
    await vault.initialize()
    await vault.setup_passphrase(PASSPHRASE)
    return vault
