"""Stable remote identities for messages."""

from __future__ import annotations

import hashlib

from mail_monitor.utils.email import IdentityHeaders

FINGERPRINT_PREFIX = "fp:"


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest for raw bytes.

    Args:
        data: Input bytes.

    Returns:
        Hex-encoded SHA-256 digest.
    """
    return hashlib.sha256(data).hexdigest()


def compute_fingerprint(headers: IdentityHeaders, *, size: int) -> str:
    """Compute a fallback identity from date, sender, subject and size.

    Args:
        headers: Parsed identity headers.
        size: Message size in bytes.

    Returns:
        ``fp:`` followed by 32 hex characters.
    """
    canonical = "\n".join(
        [
            headers.date.isoformat() if headers.date else (headers.date_raw or ""),
            headers.from_ or "",
            headers.subject or "",
            str(size),
        ],
    ).encode("utf-8", errors="replace")
    return FINGERPRINT_PREFIX + sha256_hex(canonical)[:32]


def stable_item_id(headers: IdentityHeaders, *, size: int) -> str:
    """Return the remote identity of a message.

    The normalized Message-ID is preferred; the fingerprint is used when the
    header is missing.
    """
    return headers.message_id_norm or compute_fingerprint(headers, size=size)
