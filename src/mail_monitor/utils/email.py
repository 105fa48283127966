"""Header parsing and normalization utilities."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from email import policy
from email.header import decode_header, make_header
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime


def _decode_header_value(value: str) -> str:
    """Decode RFC 2047-encoded header values.

    Args:
        value: Raw header value.

    Returns:
        Best-effort decoded value.
    """
    try:
        return str(make_header(decode_header(value)))
    except Exception:
        return value


def normalize_message_id(value: str | None) -> str | None:
    """Normalize a Message-ID for stable comparisons.

    Args:
        value: Raw Message-ID header value.

    Returns:
        Normalized Message-ID in angle brackets, or None if missing/invalid.
    """
    if value is None:
        return None
    v = value.strip()
    if not v:
        return None

    if " " in v:
        v = v.split(" ", 1)[0].strip()
    if v.startswith("<") and v.endswith(">"):
        v = v[1:-1].strip()
    if not v:
        return None
    return f"<{v.lower()}>"


def primary_address(value: str | None) -> str:
    """Return the first email address of a header, lowercased.

    Falls back to the decoded header text when no address can be parsed.
    """
    if not value:
        return ""
    for _, addr in getaddresses([value]):
        if addr and addr.strip():
            return addr.strip().lower()
    return value.strip()


@dataclass(frozen=True)
class IdentityHeaders:
    """Headers used to identify and describe a remote message."""

    message_id_norm: str | None
    subject: str | None
    from_: str | None
    date_raw: str | None
    date: datetime | None


def parse_identity_headers(raw_headers: bytes) -> IdentityHeaders:
    """Parse the identity headers from a raw header block.

    Args:
        raw_headers: Header bytes as returned by a ``HEADER.FIELDS`` fetch.

    Returns:
        Parsed header values with best-effort decoding.
    """
    msg = BytesParser(policy=policy.compat32).parsebytes(raw_headers, headersonly=True)

    date_raw = msg.get("Date")
    date: datetime | None = None
    if date_raw:
        try:
            parsed = parsedate_to_datetime(str(date_raw))
            date = parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
        except (TypeError, ValueError):
            date = None

    subj_raw = msg.get("Subject")
    from_raw = msg.get("From")
    mid_raw = msg.get("Message-ID")

    return IdentityHeaders(
        message_id_norm=normalize_message_id(str(mid_raw)) if mid_raw else None,
        subject=_decode_header_value(str(subj_raw)) if subj_raw else None,
        from_=_decode_header_value(str(from_raw)) if from_raw else None,
        date_raw=str(date_raw) if date_raw else None,
        date=date,
    )
