"""
Vault Crypto Core — Envelope wire format and value serialization.

Encrypted values are stored as a compact JSON envelope:
    {"v":"xchacha20-poly1305","n":"<base64 nonce>","c":"<base64 ciphertext>"}

Base64 uses the standard alphabet with padding. The envelope must stay
bit-exact so values written by other implementations keep decrypting.

Security Note:
    Never log plaintext or ciphertext values.
"""
import base64
from typing import Any, Optional

import orjson

from .primitives import AEAD_ALGORITHM

ENVELOPE_VERSION = AEAD_ALGORITHM


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    """Strict standard-alphabet decode; raises ``binascii.Error`` on bad input."""
    return base64.b64decode(data.encode("ascii"), validate=True)


def to_bytes(value: Any) -> bytes:
    """Serialize a message to bytes for encryption.

    ``str`` is UTF-8 encoded, byte buffers are taken as-is and anything else
    is JSON-encoded with orjson.

    Raises:
        TypeError: If value is None or not JSON-serializable.
    """
    if value is None:
        raise TypeError("encrypt: message is None")
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    try:
        return orjson.dumps(value)
    except orjson.JSONEncodeError as err:
        raise TypeError(f"encrypt: message is not serializable: {err}") from err


def parse_envelope(raw: Any) -> Optional[dict]:
    """Return the envelope dict when ``raw`` has the envelope shape, else None."""
    if not isinstance(raw, (str, bytes, bytearray)):
        return None
    try:
        parsed = orjson.loads(raw)
    except orjson.JSONDecodeError:
        return None
    if (
        isinstance(parsed, dict)
        and parsed.get("v") == ENVELOPE_VERSION
        and isinstance(parsed.get("n"), str)
        and isinstance(parsed.get("c"), str)
    ):
        return parsed
    return None


def is_envelope(raw: Any) -> bool:
    """Structural check shared by decryption and the legacy sweep."""
    return parse_envelope(raw) is not None


def encode_envelope(nonce: bytes, ciphertext: bytes) -> str:
    return orjson.dumps({
        "v": ENVELOPE_VERSION,
        "n": b64encode(nonce),
        "c": b64encode(ciphertext),
    }).decode("utf-8")


def decode_envelope(envelope: dict) -> tuple[bytes, bytes]:
    """Return ``(nonce, ciphertext)`` from a parsed envelope.

    Raises:
        binascii.Error: If either field is not valid base64.
    """
    return b64decode(envelope["n"]), b64decode(envelope["c"])


__all__ = [
    "ENVELOPE_VERSION",
    "b64encode",
    "b64decode",
    "to_bytes",
    "parse_envelope",
    "is_envelope",
    "encode_envelope",
    "decode_envelope",
]
