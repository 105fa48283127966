"""Async IMAP client wrapper used by the IMAP mail store adapter."""

from __future__ import annotations

import asyncio
import imaplib
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

import aioimaplib

_LIST_MAILBOX_RE = re.compile(
    rb'^\* LIST \((?P<flags>[^\)]*)\)\s+(?P<delim>NIL|"[^"]*"|[^\s]+)\s+(?P<name>.+)$',
)
_LITERAL_RE = re.compile(rb"^\{(?P<n>\d+)\}$")
_FETCH_START_RE = re.compile(rb"^\*?\s*\d+ FETCH \(", re.IGNORECASE)
_FETCH_LITERAL_RE = re.compile(rb"\{(?P<n>\d+)\}$")
_UID_RE = re.compile(rb"\bUID (?P<uid>\d+)")
_FLAGS_RE = re.compile(rb"\bFLAGS \((?P<flags>[^\)]*)\)")
_INTERNALDATE_RE = re.compile(rb'\bINTERNALDATE "(?P<date>[^"]+)"')
_SIZE_RE = re.compile(rb"\bRFC822\.SIZE (?P<size>\d+)")
_EXISTS_RE = re.compile(rb"(?i)\* (?P<exists>\d+) EXISTS")
_UIDVALIDITY_RE = re.compile(rb"\[UIDVALIDITY (?P<uidvalidity>\d+)\]")

SUMMARY_HEADER_FIELDS = "MESSAGE-ID SUBJECT FROM DATE"

logger = logging.getLogger(__name__)


class ImapError(RuntimeError):
    """Raised for IMAP command errors."""


class ImapAuthError(ImapError):
    """Raised when the server rejects the credentials."""


@dataclass(frozen=True)
class SelectInfo:
    """IMAP SELECT response metadata."""

    mailbox: str
    uidvalidity: int | None
    exists: int | None


@dataclass(frozen=True)
class MailboxEntry:
    """One mailbox returned by LIST."""

    name: str
    selectable: bool


@dataclass(frozen=True)
class FetchSummary:
    """Flags, dates and header block fetched for one UID."""

    uid: int
    flags: frozenset[str]
    internal_date: datetime | None
    size: int
    header_bytes: bytes


class ImapClient:
    """Async IMAP client exposing the handful of commands the monitor needs.

    A single connection is shared; commands are serialized with a lock because
    SELECT changes connection state.
    """

    def __init__(self, *, host: str, port: int, ssl: bool, timeout_seconds: float = 30.0) -> None:
        """Initialize the IMAP client.

        Args:
            host: IMAP host.
            port: IMAP port.
            ssl: Whether to use SSL.
            timeout_seconds: Network timeout for IMAP operations.
        """
        self._host = host
        self._port = port
        self._ssl = ssl
        self._timeout = timeout_seconds
        self._imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL | None = None
        self._lock = asyncio.Lock()
        self._selected: str | None = None

    @property
    def connected(self) -> bool:
        """Return True while a server connection is held."""
        return self._imap is not None

    async def connect(self) -> None:
        """Connect to the IMAP server."""
        async with self._lock:
            if self._imap is not None:
                return
            if self._ssl:
                imap = aioimaplib.IMAP4_SSL(self._host, self._port, timeout=self._timeout)
            else:
                imap = aioimaplib.IMAP4(self._host, self._port, timeout=self._timeout)
            await asyncio.wait_for(imap.wait_hello_from_server(), timeout=self._timeout)
            self._imap = imap
            self._selected = None

    async def login(self, *, username: str, app_password: str) -> None:
        """Login to the IMAP server.

        Args:
            username: IMAP username.
            app_password: IMAP app-specific password.

        Raises:
            ImapAuthError: If authentication is rejected.
        """
        async with self._lock:
            imap = self._require()
            resp = await asyncio.wait_for(imap.login(username, app_password), timeout=self._timeout)
            if resp.result != "OK":
                raise ImapAuthError(f"IMAP login failed: {resp.result} {resp.lines!r}")

    async def capabilities(self) -> list[str]:
        """Return the server capabilities advertised after login."""
        async with self._lock:
            imap = self._require()
            resp = await asyncio.wait_for(imap.capability(), timeout=self._timeout)
            if resp.result != "OK":
                raise ImapError(f"IMAP CAPABILITY failed: {resp.result} {resp.lines!r}")
            out: list[str] = []
            for line in resp.lines:
                text = bytes(line).decode("ascii", errors="replace").strip()
                if text.upper().startswith("CAPABILITY "):
                    text = text[len("CAPABILITY ") :]
                elif text.upper().startswith("* CAPABILITY "):
                    text = text[len("* CAPABILITY ") :]
                else:
                    continue
                out.extend(part.upper() for part in text.split())
            return out

    async def noop(self) -> None:
        """Send NOOP; raises ImapError if the server does not answer OK."""
        async with self._lock:
            imap = self._require()
            resp = await asyncio.wait_for(imap.noop(), timeout=self._timeout)
            if resp.result != "OK":
                raise ImapError(f"IMAP NOOP failed: {resp.result} {resp.lines!r}")

    async def logout(self) -> None:
        """Logout and close the IMAP connection."""
        async with self._lock:
            if self._imap is None:
                return
            try:
                await asyncio.wait_for(self._imap.logout(), timeout=self._timeout)
            finally:
                self._imap = None
                self._selected = None

    def drop(self) -> None:
        """Forget the connection without talking to the server."""
        self._imap = None
        self._selected = None

    async def list_mailboxes(self) -> list[MailboxEntry]:
        """List available IMAP mailboxes.

        Raises:
            ImapError: If the LIST command fails.
        """
        async with self._lock:
            imap = self._require()
            resp = await asyncio.wait_for(imap.list('""', "*"), timeout=self._timeout)
            if resp.result != "OK":
                raise ImapError(f"IMAP LIST failed: {resp.result} {resp.lines!r}")
            return _parse_list_response(resp.lines)

    async def search_uids(self, mailbox: str, criteria: Iterable[str]) -> list[int]:
        """Select a mailbox and return UIDs matching the criteria, ascending."""
        async with self._lock:
            await self._select_locked(mailbox)
            imap = self._require()
            resp = await asyncio.wait_for(
                imap.protocol.search(*criteria, by_uid=True),
                timeout=self._timeout,
            )
            if resp.result != "OK":
                raise ImapError(f"IMAP UID SEARCH failed ({mailbox}): {resp.result} {resp.lines!r}")
            return sorted(_parse_search_response(resp.lines))

    async def fetch_summaries(self, mailbox: str, uids: Sequence[int]) -> list[FetchSummary]:
        """Fetch flags, internal date, size and identity headers for UIDs.

        Args:
            mailbox: Mailbox to fetch from.
            uids: UIDs to fetch.

        Returns:
            One FetchSummary per UID the server returned.

        Raises:
            ImapError: If the FETCH command fails.
        """
        if not uids:
            return []
        async with self._lock:
            await self._select_locked(mailbox)
            imap = self._require()
            uid_set = ",".join(str(uid) for uid in uids)
            resp = await asyncio.wait_for(
                imap.uid(
                    "fetch",
                    uid_set,
                    f"(UID FLAGS INTERNALDATE RFC822.SIZE "
                    f"BODY.PEEK[HEADER.FIELDS ({SUMMARY_HEADER_FIELDS})])",
                ),
                timeout=self._timeout,
            )
            if resp.result != "OK":
                raise ImapError(f"IMAP UID FETCH failed ({mailbox}): {resp.result} {resp.lines!r}")
            return _parse_fetch_summaries(resp.lines)

    async def _select_locked(self, mailbox: str) -> SelectInfo:
        """EXAMINE a mailbox; caller must hold the lock."""
        imap = self._require()
        resp = await asyncio.wait_for(imap.examine(_imap_quote(mailbox)), timeout=self._timeout)
        if resp.result != "OK":
            self._selected = None
            raise ImapError(f"IMAP EXAMINE failed ({mailbox}): {resp.result} {resp.lines!r}")
        self._selected = mailbox

        uidvalidity: int | None = None
        exists: int | None = None
        for line in resp.lines:
            raw = bytes(line)
            match = _UIDVALIDITY_RE.search(raw)
            if match:
                uidvalidity = int(match.group("uidvalidity"))
            match = _EXISTS_RE.search(raw)
            if match:
                exists = int(match.group("exists"))
        return SelectInfo(mailbox=mailbox, uidvalidity=uidvalidity, exists=exists)

    def _require(self) -> aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL:
        """Return the underlying IMAP client or raise if not connected."""
        if self._imap is None:
            raise ImapError("IMAP client not connected")
        return self._imap


def _parse_search_response(lines: Sequence[bytes]) -> list[int]:
    """Extract UIDs from UID SEARCH response lines."""
    uids: list[int] = []
    for line in lines:
        parts = bytes(line).split()
        if len(parts) >= 2 and parts[0] == b"*" and parts[1] == b"SEARCH":
            parts = parts[2:]
        elif parts and parts[0] == b"SEARCH":
            parts = parts[1:]
        if parts and all(p.isdigit() for p in parts):
            uids.extend(int(p) for p in parts)
    return uids


def parse_internal_date(value: bytes | str) -> datetime | None:
    """Parse an IMAP INTERNALDATE such as ``17-Jul-1996 02:44:25 -0700``.

    Returns:
        Timezone-aware datetime in UTC, or None if unparseable.
    """
    text = value.decode("ascii", errors="replace") if isinstance(value, bytes) else value
    try:
        parsed = datetime.strptime(text.strip(), "%d-%b-%Y %H:%M:%S %z")
    except ValueError:
        return None
    return parsed.astimezone(UTC)


def _parse_fetch_summaries(lines: Sequence[bytes | bytearray]) -> list[FetchSummary]:
    """Parse a multi-message UID FETCH response.

    Each message starts with a ``n FETCH (`` line that may end with a literal
    marker ``{size}``; the literal (header block) follows as its own line, and
    attributes may continue on the line after the literal.

    Args:
        lines: Response lines from aioimaplib.

    Returns:
        Parsed summaries; entries without a UID are dropped.
    """
    out: list[FetchSummary] = []
    attrs = b""
    header = b""
    in_item = False
    after_literal = False
    idx = 0

    def _flush() -> None:
        uid_match = _UID_RE.search(attrs)
        if uid_match is None:
            if attrs:
                logger.debug("IMAP FETCH item without UID dropped: %r", attrs)
            return
        flags_match = _FLAGS_RE.search(attrs)
        date_match = _INTERNALDATE_RE.search(attrs)
        size_match = _SIZE_RE.search(attrs)
        flags = (
            frozenset(flag.decode("ascii", errors="replace") for flag in flags_match.group("flags").split())
            if flags_match
            else frozenset()
        )
        out.append(
            FetchSummary(
                uid=int(uid_match.group("uid")),
                flags=flags,
                internal_date=parse_internal_date(date_match.group("date")) if date_match else None,
                size=int(size_match.group("size")) if size_match else 0,
                header_bytes=header,
            ),
        )

    while idx < len(lines):
        line = bytes(lines[idx])
        if _FETCH_START_RE.match(line):
            if in_item:
                _flush()
            in_item = True
            attrs = line
            header = b""
            literal = _FETCH_LITERAL_RE.search(line)
            if literal is not None and idx + 1 < len(lines):
                header = bytes(lines[idx + 1])
                after_literal = True
                idx += 2
                continue
        elif after_literal and line.strip() not in {b")", b""}:
            attrs += b" " + line
        after_literal = False
        idx += 1

    if in_item:
        _flush()
    return out


def _parse_list_response(lines: Sequence[bytes]) -> list[MailboxEntry]:
    """Parse mailbox names and selectability from an IMAP LIST response."""
    out: list[MailboxEntry] = []
    seen: set[str] = set()
    idx = 0
    while idx < len(lines):
        line = bytes(lines[idx]).strip()
        if line.startswith(b"("):
            line = b"* LIST " + line
        match = _LIST_MAILBOX_RE.match(line)
        if not match:
            idx += 1
            continue

        name_token = match.group("name").strip()
        literal_match = _LITERAL_RE.match(name_token)
        if literal_match:
            if idx + 1 >= len(lines):
                break
            raw_name = bytes(lines[idx + 1]).strip()
            idx += 2
        else:
            raw_name = name_token
            idx += 1

        name = _decode_mailbox_name(raw_name)
        if not name or name in seen:
            continue
        seen.add(name)
        flags = match.group("flags").lower()
        out.append(MailboxEntry(name=name, selectable=b"\\noselect" not in flags))
    return out


def _decode_mailbox_name(raw: bytes) -> str:
    """Decode an IMAP mailbox name with modified UTF-7 if needed."""
    value = raw.strip()
    if not value or value.upper() == b"NIL":
        return ""

    if value.startswith(b'"') and value.endswith(b'"') and len(value) >= 2:
        value = value[1:-1].replace(b'\\"', b'"').replace(b"\\\\", b"\\")

    decoded = value.decode("ascii", errors="replace")
    decoder = getattr(imaplib, "DecodeUTF7", None)
    if callable(decoder):
        try:
            return str(decoder(decoded))
        except Exception:
            return decoded
    return decoded


def _imap_quote(value: str) -> str:
    """Quote a mailbox name for use in IMAP commands."""
    stripped = value.strip()
    if not stripped:
        return '""'
    escaped = stripped.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'
