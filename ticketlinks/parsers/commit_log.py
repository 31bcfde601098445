"""Stream `git log --pretty=format:'%H %at %s'` output into ticket/commit records.

Each line is ``<sha> <unix-seconds> <subject>``. Lines whose subject does not
start with a ticket reference are dropped, and the first empty line ends the
stream even when more bytes follow.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import AsyncIterator, BinaryIO, Iterator

from ticketlinks.errors import CommitLogParseError

# Upper bound for a single log line, excluding the trailing newline.
MAX_LINE_BYTES = 1024 * 1024

# Matches a bare "-55" too (zero leading letters).
TICKET_PATTERN = re.compile(r"^[A-Z]*-[0-9]+")
_TIMESTAMP_PATTERN = re.compile(r"^[+-]?[0-9]+$")


@dataclass(frozen=True)
class ParsedCommitRecord:
    sha: str
    ticket: str
    created_unix: int


def extract_ticket(message: str) -> str:
    """Return the ticket reference at the start of ``message`` or ''."""
    match = TICKET_PATTERN.match(message)
    return match.group(0) if match else ""


def _to_timestamp(sha: str, value: str) -> int:
    if not _TIMESTAMP_PATTERN.match(value):
        raise CommitLogParseError(f"commit {sha}: invalid timestamp {value!r}")
    return int(value)


def parse_commit_line(line: str) -> ParsedCommitRecord | None:
    """Parse one non-empty log line. Returns None when no ticket is referenced."""
    parts = line.split(" ", 2)
    message = parts[2] if len(parts) == 3 else ""
    ticket = extract_ticket(message)
    if not ticket:
        return None
    sha = parts[0]
    return ParsedCommitRecord(sha=sha, ticket=ticket, created_unix=_to_timestamp(sha, parts[1]))


def _decode(raw: bytes) -> str:
    if raw.endswith(b"\n"):
        raw = raw[:-1]
    return raw.decode("utf-8", errors="replace")


def _check_length(raw: bytes) -> None:
    body = raw[:-1] if raw.endswith(b"\n") else raw
    if len(body) > MAX_LINE_BYTES:
        raise CommitLogParseError(f"commit log line exceeds {MAX_LINE_BYTES} bytes")


def iter_commit_records(stream: BinaryIO) -> Iterator[ParsedCommitRecord]:
    """Lazily yield records from a binary file-like object."""
    while True:
        raw = stream.readline(MAX_LINE_BYTES + 2)
        if not raw:
            return
        _check_length(raw)
        line = _decode(raw)
        if not line:
            return
        record = parse_commit_line(line)
        if record is not None:
            yield record


async def aiter_commit_records(reader: asyncio.StreamReader) -> AsyncIterator[ParsedCommitRecord]:
    """Lazily yield records from an asyncio stream (e.g. a git subprocess pipe).

    The reader's own buffer limit should be above ``MAX_LINE_BYTES``; an
    overrun surfaces from ``readline`` as ValueError and is reported as a
    parse error.
    """
    while True:
        try:
            raw = await reader.readline()
        except ValueError as exc:
            raise CommitLogParseError(f"commit log line exceeds buffer limit: {exc}") from exc
        if not raw:
            return
        _check_length(raw)
        line = _decode(raw)
        if not line:
            return
        record = parse_commit_line(line)
        if record is not None:
            yield record
