"""
Comprehensive tests for VaultService.

Tests cover:
- Lifecycle transitions (uninitialized, locked, unlocking, unlocked, error)
- Setup and unlock failure modes
- Encryption facade round trips and pass-through behaviour
- Encryption hooks installation and revocation
- Status subscriptions
- Serialization of concurrent setup/unlock/lock calls
"""
import asyncio

import orjson
import pytest

from conftest import OTHER_PASSPHRASE, PASSPHRASE
from pain_tracker.vault import VaultService, VaultState, PrimitiveProvider
from pain_tracker.vault.crypto import is_envelope
from pain_tracker.vault.exceptions import (
    AlreadyConfigured,
    DecryptionFailed,
    EncryptionUnavailable,
    IncorrectPassphrase,
    InvalidKey,
    KeyNotSet,
    NotAnEnvelope,
    NotConfigured,
    PersistFailure,
    PrimitivesUnavailable,
    UnlockAborted,
    VerificationFailed,
    WeakPassphrase,
)
from pain_tracker.vault.primitives import load_primitives


def failing_provider() -> PrimitiveProvider:
    def loader():
        raise PrimitivesUnavailable("Argon2id password hashing is not available")
    return PrimitiveProvider(loader=loader)


# --- Test Initialization ---

class TestInitialization:
    """Tests for initialize()."""

    @pytest.mark.asyncio
    async def test_fresh_vault_is_uninitialized(self, vault):
        status = await vault.initialize()
        assert status.state == VaultState.UNINITIALIZED
        assert status.metadata is None
        assert status.primitives_ready is True

    @pytest.mark.asyncio
    async def test_existing_metadata_is_locked(self, unlocked_vault, storage, fast_config, provider):
        other = VaultService(storage, config=fast_config, provider=provider)
        status = await other.initialize()
        assert status.state == VaultState.LOCKED
        assert status.metadata == unlocked_vault.status.metadata

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, vault):
        first = await vault.initialize()
        second = await vault.initialize()
        assert first is second

    @pytest.mark.asyncio
    async def test_corrupt_metadata_reports_uninitialized(self, vault, backend):
        backend.set("pt:vault:metadata", "{corrupt")
        status = await vault.initialize()
        assert status.state == VaultState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_primitive_failure_is_error_state(self, storage, fast_config):
        vault = VaultService(storage, config=fast_config, provider=failing_provider())
        status = await vault.initialize()
        assert status.state == VaultState.ERROR
        assert status.primitives_ready is False
        assert vault.is_unlocked() is False

    @pytest.mark.asyncio
    async def test_error_state_blocks_setup_and_unlock(self, storage, fast_config):
        vault = VaultService(storage, config=fast_config, provider=failing_provider())
        await vault.initialize()
        with pytest.raises(PrimitivesUnavailable):
            await vault.setup_passphrase(PASSPHRASE)
        with pytest.raises(PrimitivesUnavailable):
            await vault.unlock(PASSPHRASE)
        assert vault.status.state == VaultState.ERROR
        assert storage.hooks.available is False


# --- Test Setup ---

class TestSetupPassphrase:
    """Tests for setup_passphrase()."""

    @pytest.mark.asyncio
    async def test_setup_unlocks(self, unlocked_vault):
        assert unlocked_vault.is_unlocked() is True
        assert unlocked_vault.status.state == VaultState.UNLOCKED

    @pytest.mark.asyncio
    async def test_setup_persists_metadata(self, unlocked_vault, backend, fast_config):
        document = orjson.loads(backend.get("pt:vault:metadata"))
        assert document["version"] == "3.0.0"
        assert document["derivation"]["algorithm"] == "argon2id"
        assert document["derivation"]["keyLength"] == 32
        assert document["derivation"]["opslimit"] == fast_config.opslimit
        assert document["derivation"]["memlimit"] == fast_config.memlimit
        assert document["cipher"] == {"algorithm": "xchacha20-poly1305", "nonceLength": 24}
        assert document["verification"]["hash"].startswith("$argon2id$")
        assert document["createdAt"] == document["updatedAt"]

    @pytest.mark.asyncio
    async def test_verification_hash_is_independent_of_key_salt(self, unlocked_vault):
        metadata = unlocked_vault.status.metadata
        # argon2 hash strings carry their own salt, unpadded base64
        assert metadata.derivation.salt.rstrip("=") not in metadata.verification.hash

    @pytest.mark.asyncio
    @pytest.mark.parametrize("passphrase", ["", "short", "elevenchars"])
    async def test_weak_passphrase_rejected(self, vault, passphrase):
        with pytest.raises(WeakPassphrase):
            await vault.setup_passphrase(passphrase)
        assert vault.is_unlocked() is False

    @pytest.mark.asyncio
    async def test_twelve_characters_accepted(self, vault):
        await vault.setup_passphrase("twelve chars")
        assert vault.is_unlocked() is True

    @pytest.mark.asyncio
    async def test_setup_twice_rejected(self, unlocked_vault):
        with pytest.raises(AlreadyConfigured):
            await unlocked_vault.setup_passphrase(OTHER_PASSPHRASE)
        assert unlocked_vault.is_unlocked() is True

    @pytest.mark.asyncio
    async def test_persist_failure_leaves_vault_locked(self, vault, backend):
        backend.fail_keys.add("pt:vault:metadata")
        with pytest.raises(PersistFailure):
            await vault.setup_passphrase(PASSPHRASE)
        assert vault.is_unlocked() is False
        assert vault.status.state == VaultState.UNINITIALIZED
        assert vault.storage.hooks.available is False

    @pytest.mark.asyncio
    async def test_invalid_library_salt_length_falls_back(self, vault, provider, caplog):
        primitives = await provider.ready()
        primitives.salt_bytes = 0
        await vault.setup_passphrase(PASSPHRASE)
        salt = vault.status.metadata.derivation.salt_bytes
        assert len(salt) == 16
        assert "Invalid salt length" in caplog.text


# --- Test Unlock / Lock ---

class TestUnlockLock:
    """Tests for the lock/unlock cycle."""

    @pytest.mark.asyncio
    async def test_lock_then_unlock_recovers_data(self, unlocked_vault):
        envelope = unlocked_vault.encrypt_string("before lock")
        unlocked_vault.lock()
        assert unlocked_vault.is_unlocked() is False
        assert unlocked_vault.status.state == VaultState.LOCKED

        await unlocked_vault.unlock(PASSPHRASE)
        assert unlocked_vault.is_unlocked() is True
        assert unlocked_vault.decrypt_string(envelope) == "before lock"

    @pytest.mark.asyncio
    async def test_fresh_instance_unlocks_with_same_key(self, unlocked_vault, storage, fast_config):
        envelope = unlocked_vault.encrypt_string({"pain": 7})
        unlocked_vault.lock()

        other = VaultService(storage, config=fast_config, provider=PrimitiveProvider())
        await other.unlock(PASSPHRASE)
        assert orjson.loads(other.decrypt_string(envelope)) == {"pain": 7}

    @pytest.mark.asyncio
    async def test_wrong_passphrase_stays_locked(self, unlocked_vault):
        unlocked_vault.lock()
        with pytest.raises(IncorrectPassphrase):
            await unlocked_vault.unlock(OTHER_PASSPHRASE)
        assert unlocked_vault.status.state == VaultState.LOCKED
        assert unlocked_vault.is_unlocked() is False

    @pytest.mark.asyncio
    async def test_empty_passphrase_rejected(self, unlocked_vault):
        unlocked_vault.lock()
        with pytest.raises(IncorrectPassphrase):
            await unlocked_vault.unlock("")

    @pytest.mark.asyncio
    async def test_unlock_without_metadata(self, vault):
        with pytest.raises(NotConfigured):
            await vault.unlock(PASSPHRASE)

    @pytest.mark.asyncio
    async def test_corrupt_verification_hash_looks_like_wrong_passphrase(
        self, unlocked_vault, storage, fast_config, backend
    ):
        unlocked_vault.lock()
        document = orjson.loads(backend.get("pt:vault:metadata"))
        document["verification"]["hash"] = "$argon2id$garbage"
        backend.set("pt:vault:metadata", orjson.dumps(document).decode())

        other = VaultService(storage, config=fast_config, provider=PrimitiveProvider())
        with pytest.raises(IncorrectPassphrase) as exc_info:
            await other.unlock(PASSPHRASE)
        assert isinstance(exc_info.value, VerificationFailed)
        assert str(exc_info.value) == str(IncorrectPassphrase())
        assert other.status.state == VaultState.LOCKED

    @pytest.mark.asyncio
    async def test_wrong_passphrase_keeps_active_session(self, unlocked_vault):
        envelope = unlocked_vault.encrypt_string("still here")
        key = unlocked_vault._holder.key
        seen = []
        unlocked_vault.subscribe(lambda status: seen.append(status.state))

        with pytest.raises(IncorrectPassphrase):
            await unlocked_vault.unlock(OTHER_PASSPHRASE)
        assert unlocked_vault.is_unlocked() is True
        assert unlocked_vault.status.state == VaultState.UNLOCKED
        assert unlocked_vault._holder.key is key
        assert unlocked_vault.storage.hooks.available is True
        assert unlocked_vault.decrypt_string(envelope) == "still here"
        assert seen == [VaultState.UNLOCKED]

    @pytest.mark.asyncio
    async def test_unlock_while_unlocked_replaces_key(self, unlocked_vault):
        old_key = unlocked_vault._holder.key
        envelope = unlocked_vault.encrypt_string("same key material")
        await unlocked_vault.unlock(PASSPHRASE)

        assert unlocked_vault.is_unlocked() is True
        assert unlocked_vault._holder.key is not old_key
        assert old_key == bytearray(len(old_key))
        assert unlocked_vault.decrypt_string(envelope) == "same key material"

    @pytest.mark.asyncio
    async def test_lock_wipes_key_buffer(self, unlocked_vault):
        key = unlocked_vault._holder.key
        assert any(key)
        unlocked_vault.lock()
        assert key == bytearray(len(key))
        assert unlocked_vault._holder.key is None

    @pytest.mark.asyncio
    async def test_lock_when_uninitialized_is_noop(self, vault):
        await vault.initialize()
        vault.lock()
        assert vault.status.state == VaultState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_context_manager_locks(self, unlocked_vault):
        with unlocked_vault as v:
            assert v.is_unlocked() is True
        assert unlocked_vault.is_unlocked() is False


# --- Test Clear ---

class TestClearAll:
    """Tests for clear_all()."""

    @pytest.mark.asyncio
    async def test_clear_removes_metadata(self, unlocked_vault, backend, storage, fast_config):
        unlocked_vault.clear_all()
        assert backend.get("pt:vault:metadata") is None
        assert unlocked_vault.status.state == VaultState.UNINITIALIZED
        assert unlocked_vault.status.metadata is None
        assert unlocked_vault.is_unlocked() is False

        fresh = VaultService(storage, config=fast_config, provider=PrimitiveProvider())
        status = await fresh.initialize()
        assert status.state == VaultState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_clear_keeps_entries_by_default(self, unlocked_vault, storage):
        storage.set("draft", {"pain": 3}, encrypt=True)
        unlocked_vault.clear_all()
        assert "draft" in storage.keys()

    @pytest.mark.asyncio
    async def test_clear_with_purge(self, unlocked_vault, storage, backend):
        storage.set("draft", {"pain": 3}, encrypt=True)
        backend.set("outside-namespace", "kept")
        unlocked_vault.clear_all(purge_entries=True)
        assert storage.keys() == []
        assert backend.get("outside-namespace") == "kept"

    @pytest.mark.asyncio
    async def test_setup_after_clear(self, unlocked_vault):
        unlocked_vault.clear_all()
        await unlocked_vault.setup_passphrase(OTHER_PASSPHRASE)
        assert unlocked_vault.is_unlocked() is True


# --- Test Encryption Facade ---

class TestEncryptionFacade:
    """Tests for encrypt/decrypt operations."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", ["", "hello", "żółć 😀 痛み", "x" * 1_000_000])
    async def test_string_round_trip(self, unlocked_vault, message):
        envelope = unlocked_vault.encrypt_string(message)
        assert is_envelope(envelope)
        assert unlocked_vault.decrypt_string(envelope) == message

    @pytest.mark.asyncio
    async def test_envelope_shape(self, unlocked_vault):
        envelope = orjson.loads(unlocked_vault.encrypt_string("hello"))
        assert list(envelope.keys()) == ["v", "n", "c"]
        assert envelope["v"] == "xchacha20-poly1305"

    @pytest.mark.asyncio
    async def test_fresh_nonce_per_message(self, unlocked_vault):
        first = orjson.loads(unlocked_vault.encrypt_string("same"))
        second = orjson.loads(unlocked_vault.encrypt_string("same"))
        assert first["n"] != second["n"]
        assert first["c"] != second["c"]

    @pytest.mark.asyncio
    async def test_json_values(self, unlocked_vault):
        envelope = unlocked_vault.encrypt_string({"entries": [1, 2, 3]})
        assert orjson.loads(unlocked_vault.decrypt_string(envelope)) == {"entries": [1, 2, 3]}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        "plain text",
        "",
        "{malformed json",
        '{"v": "other", "n": "AA==", "c": "AA=="}',
        '{"pain": 4}',
    ])
    async def test_non_envelope_passes_through(self, unlocked_vault, payload):
        assert unlocked_vault.decrypt_string(payload) == payload

    @pytest.mark.asyncio
    async def test_tampered_envelope_returned_unchanged(self, unlocked_vault):
        envelope = orjson.loads(unlocked_vault.encrypt_string("secret"))
        envelope["c"] = "AAAA" + envelope["c"][4:]
        tampered = orjson.dumps(envelope).decode()
        assert unlocked_vault.decrypt_string(tampered) == tampered

    @pytest.mark.asyncio
    async def test_strict_variant_distinguishes_failures(self, unlocked_vault):
        with pytest.raises(NotAnEnvelope):
            unlocked_vault.decrypt_string_strict("plain text")

        envelope = orjson.loads(unlocked_vault.encrypt_string("secret"))
        envelope["n"] = "not base64!"
        with pytest.raises(DecryptionFailed):
            unlocked_vault.decrypt_string_strict(orjson.dumps(envelope).decode())

        good = unlocked_vault.encrypt_string("secret")
        assert unlocked_vault.decrypt_string_strict(good) == "secret"

    @pytest.mark.asyncio
    async def test_foreign_key_envelope_returned_unchanged(self, unlocked_vault, fast_config):
        from pain_tracker.storage import MemoryByteStore

        other = VaultService.create(MemoryByteStore(), config=fast_config)
        await other.setup_passphrase(OTHER_PASSPHRASE)
        foreign = other.encrypt_string("theirs")
        assert unlocked_vault.decrypt_string(foreign) == foreign

    @pytest.mark.asyncio
    async def test_locked_vault_refuses(self, unlocked_vault):
        unlocked_vault.lock()
        with pytest.raises(KeyNotSet):
            unlocked_vault.encrypt_string("hello")
        with pytest.raises(KeyNotSet):
            unlocked_vault.decrypt_string("hello")
        with pytest.raises(KeyNotSet):
            unlocked_vault.encrypt_bytes(b"hello")

    @pytest.mark.asyncio
    async def test_invalid_key_length(self, unlocked_vault):
        unlocked_vault._holder.key = bytearray(16)
        with pytest.raises(InvalidKey):
            unlocked_vault.encrypt_string("hello")

    @pytest.mark.asyncio
    async def test_bytes_round_trip(self, unlocked_vault):
        data = bytes(range(256)) * 64
        payload = unlocked_vault.encrypt_bytes(data)
        assert set(payload) == {"nonce", "cipher"}
        assert unlocked_vault.decrypt_bytes(payload) == data

    @pytest.mark.asyncio
    async def test_decrypt_bytes_failures_raise(self, unlocked_vault):
        payload = unlocked_vault.encrypt_bytes(b"data")
        with pytest.raises(DecryptionFailed):
            unlocked_vault.decrypt_bytes({"nonce": payload["nonce"]})
        with pytest.raises(DecryptionFailed):
            unlocked_vault.decrypt_bytes({"nonce": payload["nonce"], "cipher": "AAAA"})

    @pytest.mark.asyncio
    async def test_binary_message_via_string_api(self, unlocked_vault):
        envelope = unlocked_vault.encrypt_string(b"abc")
        assert unlocked_vault.decrypt_string(envelope) == "abc"

    @pytest.mark.asyncio
    async def test_non_utf8_bytes_need_bytes_api(self, unlocked_vault):
        data = bytes(range(256)) * 4
        envelope = unlocked_vault.encrypt_string(data)
        assert unlocked_vault.decrypt_string(envelope) == envelope
        with pytest.raises(DecryptionFailed):
            unlocked_vault.decrypt_string_strict(envelope)

        payload = unlocked_vault.encrypt_bytes(data)
        assert unlocked_vault.decrypt_bytes(payload) == data

    @pytest.mark.asyncio
    async def test_cipher_receives_key_copy(self, unlocked_vault):
        primitives, key = unlocked_vault._active_key()
        held = unlocked_vault._holder.key
        assert isinstance(key, bytes)
        assert key == bytes(held)

        unlocked_vault.lock()
        assert held == bytearray(len(held))


# --- Test Hooks ---

class TestEncryptionHooks:
    """Tests for the injected encrypt/decrypt capability."""

    @pytest.mark.asyncio
    async def test_hooks_follow_lock_state(self, unlocked_vault, storage):
        hooks = storage.hooks
        assert hooks.available is True
        envelope = hooks.encrypt("hello")
        assert hooks.decrypt(envelope) == "hello"

        unlocked_vault.lock()
        assert hooks.available is False
        with pytest.raises(EncryptionUnavailable):
            hooks.encrypt("hello")
        with pytest.raises(EncryptionUnavailable):
            hooks.decrypt(envelope)

    @pytest.mark.asyncio
    async def test_hooks_revoked_on_clear(self, unlocked_vault, storage):
        unlocked_vault.clear_all()
        assert storage.hooks.available is False

    def test_revoke_by_non_owner_is_ignored(self, storage):
        owner = object()
        storage.hooks.install(owner, str.upper, str.lower)
        storage.hooks.revoke(object())
        assert storage.hooks.available is True
        storage.hooks.revoke(owner)
        assert storage.hooks.available is False


# --- Test Subscriptions ---

class TestSubscriptions:
    """Tests for status notifications."""

    @pytest.mark.asyncio
    async def test_transitions_are_published(self, vault):
        seen = []
        vault.subscribe(lambda status: seen.append(status.state))
        await vault.initialize()
        await vault.setup_passphrase(PASSPHRASE)
        vault.lock()
        await vault.unlock(PASSPHRASE)
        vault.clear_all()

        assert seen == [
            VaultState.UNINITIALIZED,  # immediate snapshot on subscribe
            VaultState.UNINITIALIZED,  # initialize
            VaultState.UNLOCKED,
            VaultState.LOCKED,
            VaultState.UNLOCKING,
            VaultState.UNLOCKED,
            VaultState.LOCKED,
            VaultState.UNINITIALIZED,
        ]

    @pytest.mark.asyncio
    async def test_failed_unlock_publishes_locked(self, unlocked_vault):
        unlocked_vault.lock()
        seen = []
        unlocked_vault.subscribe(lambda status: seen.append(status.state))
        with pytest.raises(IncorrectPassphrase):
            await unlocked_vault.unlock(OTHER_PASSPHRASE)
        assert seen == [VaultState.LOCKED, VaultState.UNLOCKING, VaultState.LOCKED]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, vault):
        seen = []
        unsubscribe = vault.subscribe(seen.append)
        unsubscribe()
        await vault.initialize()
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_vault(self, vault):
        def broken(status):
            raise RuntimeError("listener bug")

        vault.subscribe(broken)
        await vault.setup_passphrase(PASSPHRASE)
        vault.lock()
        assert vault.status.state == VaultState.LOCKED

    @pytest.mark.asyncio
    async def test_snapshots_are_immutable(self, unlocked_vault):
        snapshot = unlocked_vault.status
        unlocked_vault.lock()
        assert snapshot.state == VaultState.UNLOCKED
        assert unlocked_vault.status.state == VaultState.LOCKED


# --- Test Concurrency ---

class TestConcurrency:
    """Tests for serialized lifecycle operations."""

    @pytest.mark.asyncio
    async def test_concurrent_unlocks_are_serialized(self, unlocked_vault):
        unlocked_vault.lock()
        results = await asyncio.gather(
            unlocked_vault.unlock(PASSPHRASE),
            unlocked_vault.unlock(OTHER_PASSPHRASE),
            return_exceptions=True,
        )
        assert results[0] is None
        assert isinstance(results[1], IncorrectPassphrase)
        # The failed second attempt leaves the first unlock in place.
        assert unlocked_vault.is_unlocked() is True
        assert unlocked_vault.status.state == VaultState.UNLOCKED

    @pytest.mark.asyncio
    async def test_lock_during_unlock_aborts(self, unlocked_vault):
        unlocked_vault.lock()
        task = asyncio.create_task(unlocked_vault.unlock(PASSPHRASE))
        while unlocked_vault.status.state != VaultState.UNLOCKING:
            await asyncio.sleep(0)
        unlocked_vault.lock()

        with pytest.raises(UnlockAborted):
            await task
        assert unlocked_vault.is_unlocked() is False
        assert unlocked_vault.status.state == VaultState.LOCKED

    @pytest.mark.asyncio
    async def test_clear_during_setup_aborts(self, vault, backend):
        await vault.initialize()
        task = asyncio.create_task(vault.setup_passphrase(PASSPHRASE))
        await asyncio.sleep(0)
        vault.clear_all()

        with pytest.raises(UnlockAborted):
            await task
        assert vault.is_unlocked() is False
        assert backend.get("pt:vault:metadata") is None


def test_load_primitives_is_real():
    primitives = load_primitives()
    assert primitives.key_bytes == 32
