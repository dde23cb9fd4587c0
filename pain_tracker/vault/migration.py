"""
Legacy Migration Sweep — In-place encryption of pre-vault plaintext entries.

Scans every entry in the storage namespace and re-writes plaintext values
as envelopes. Each entry is an independent unit: a failure is counted as
skipped and logged, and the entry is retried on the next unlock. Entries
that already have the envelope shape are left untouched, so a second sweep
over the same storage performs no writes.

Security Note:
    Plaintext exists in memory only while each entry is re-encrypted.
    Never log plaintext or ciphertext values.
"""
import logging
from typing import TYPE_CHECKING, Callable, Iterable

from .crypto import is_envelope

if TYPE_CHECKING:
    from ..storage import SecureStorage

logger = logging.getLogger("pain_tracker.vault")


def sweep_legacy_entries(
    storage: "SecureStorage",
    encrypt: Callable[[str], str],
    *,
    skip: Iterable[str] = (),
    dry_run: bool = False,
) -> dict:
    """Encrypt every plaintext entry in the storage namespace.

    Args:
        storage: Namespaced storage whose backend holds the entries.
        encrypt: Function wrapping a plaintext string into an envelope.
        skip: Fully-qualified keys never touched (the vault metadata).
        dry_run: Count what would be migrated without writing.

    Returns:
        Stats dict with keys: total, reencrypted, already_encrypted, skipped.
    """
    excluded = set(skip)
    backend = storage.backend
    stats = {"total": 0, "reencrypted": 0, "already_encrypted": 0, "skipped": 0}

    # Snapshot the keys up front: entries are rewritten while iterating.
    for full_key in storage.full_keys():
        if full_key in excluded:
            continue
        stats["total"] += 1

        try:
            raw = backend.get(full_key)
        except Exception as err:
            logger.warning("Failed to read legacy entry key=%s: %s", full_key, err)
            stats["skipped"] += 1
            continue
        if not isinstance(raw, str):
            logger.warning("Legacy entry key=%s vanished during sweep", full_key)
            stats["skipped"] += 1
            continue
        if is_envelope(raw):
            stats["already_encrypted"] += 1
            continue
        if dry_run:
            stats["reencrypted"] += 1
            continue

        try:
            backend.set(full_key, encrypt(raw))
            stats["reencrypted"] += 1
        except Exception as err:
            logger.warning("Failed to migrate legacy entry key=%s: %s", full_key, err)
            stats["skipped"] += 1

    if stats["reencrypted"] or stats["skipped"]:
        logger.info(
            "Legacy storage sweep%s: %s", " (dry run)" if dry_run else "", stats,
        )
    return stats
