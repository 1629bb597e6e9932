"""HMAC-SHA256 webhook signatures with replay protection.

The signed message is ``"{timestamp}.{payload}"`` where ``timestamp`` is
integer Unix seconds and ``payload`` is the canonical JSON encoding of the
body. The header form is ``t=<timestamp>,v1=<hex digest>``.

Subscribers verify by recomputing the digest with the shared secret and
rejecting timestamps outside the tolerance window.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import time
from typing import Any, NamedTuple

SIGNATURE_VERSION = "v1"
DEFAULT_TOLERANCE_SECONDS = 300


class Signature(NamedTuple):
    """A computed signature and the timestamp it covers."""

    signature: str
    timestamp: int
    version: str = SIGNATURE_VERSION


def canonical_json(payload: Any) -> str:
    """Serialize a payload deterministically.

    Keys are sorted and separators are compact so that the sender and
    receiver hash identical bytes. Strings and bytes are used as-is.
    """
    if isinstance(payload, bytes):
        return payload.decode("utf-8")
    if isinstance(payload, str):
        return payload
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def _digest(message: str, secret: str) -> str:
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=message.encode("utf-8"),
        digestmod=hashlib.sha256,
    ).hexdigest()


def sign(payload: Any, secret: str, timestamp: int | None = None) -> Signature:
    """Compute the HMAC-SHA256 signature for a webhook payload.

    Args:
        payload: Structured payload, or an already-serialized str/bytes body.
        secret: Shared endpoint secret.
        timestamp: Unix seconds to sign; defaults to now.

    Returns:
        Signature with hex digest, timestamp, and version.
    """
    ts = int(time.time()) if timestamp is None else int(timestamp)
    message = f"{ts}.{canonical_json(payload)}"
    return Signature(signature=_digest(message, secret), timestamp=ts)


def format_signature_header(sig: Signature) -> str:
    """Format a signature as ``t=<timestamp>,v1=<signature>``."""
    return f"t={sig.timestamp},{sig.version}={sig.signature}"


def parse_signature_header(header: str) -> tuple[int, str] | None:
    """Parse a ``t=<timestamp>,v1=<signature>`` header.

    Returns:
        (timestamp, signature), or None if the header is malformed.
    """
    if not header:
        return None

    timestamp: int | None = None
    signature: str | None = None
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep or not value:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None
        elif key == SIGNATURE_VERSION:
            signature = value

    if timestamp is None or signature is None:
        return None
    return timestamp, signature


def verify(
    payload: Any,
    signature: str,
    secret: str,
    timestamp: int | str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> bool:
    """Verify a webhook signature.

    Rejects timestamps further than ``tolerance_seconds`` from ``now`` and
    compares digests in constant time. Malformed input yields False rather
    than an exception.

    Args:
        payload: The payload that was signed.
        signature: Hex digest received from the sender.
        secret: Shared endpoint secret.
        timestamp: Signed Unix timestamp (seconds).
        tolerance_seconds: Accepted clock skew.
        now: Current Unix time; defaults to time.time().

    Returns:
        True if the signature is valid and fresh, False otherwise.
    """
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False

    current = time.time() if now is None else now
    if abs(current - ts) > tolerance_seconds:
        return False

    expected = sign(payload, secret, ts).signature
    try:
        received_bytes = bytes.fromhex(signature)
    except (TypeError, ValueError):
        return False
    expected_bytes = bytes.fromhex(expected)

    if len(received_bytes) != len(expected_bytes):
        return False
    return hmac.compare_digest(received_bytes, expected_bytes)


def verify_header(
    payload: Any,
    header: str,
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> bool:
    """Verify a payload against a ``t=..,v1=..`` signature header."""
    parsed = parse_signature_header(header)
    if parsed is None:
        return False
    timestamp, signature = parsed
    return verify(payload, signature, secret, timestamp, tolerance_seconds, now)


def generate_secret() -> str:
    """Generate a 256-bit endpoint secret as a hex string."""
    return secrets.token_hex(32)


__all__ = [
    "DEFAULT_TOLERANCE_SECONDS",
    "SIGNATURE_VERSION",
    "Signature",
    "canonical_json",
    "format_signature_header",
    "generate_secret",
    "parse_signature_header",
    "sign",
    "verify",
    "verify_header",
]
