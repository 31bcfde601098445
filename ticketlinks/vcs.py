"""git CLI access: commit-log streaming for sync and commit hydration for lookups."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator

from ticketlinks import config
from ticketlinks.errors import VcsError
from ticketlinks.models import CommitDetail, CommitSignature
from ticketlinks.parsers.commit_log import MAX_LINE_BYTES, ParsedCommitRecord, aiter_commit_records

logger = logging.getLogger("ticketlinks.vcs")

# The parser depends on this exact layout.
COMMIT_LOG_FORMAT = "%H %at %s"

_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x1e"
_DETAIL_FORMAT = "%x1f".join(["%H", "%an", "%ae", "%at", "%G?", "%GS", "%s", "%B"]) + "%x1e"
_VERIFIED_SIGNATURES = {"G", "U"}


def _iso_from_epoch(raw: str) -> str:
    try:
        moment = datetime.fromtimestamp(int(raw), timezone.utc)
    except (ValueError, OverflowError, OSError):
        return ""
    return moment.isoformat().replace("+00:00", "Z")


def _parse_commit_details(output: str) -> dict[str, CommitDetail]:
    details: dict[str, CommitDetail] = {}
    for chunk in output.split(_RECORD_SEP):
        chunk = chunk.strip("\n")
        if not chunk:
            continue
        fields = chunk.split(_FIELD_SEP)
        if len(fields) < 8:
            raise VcsError(f"unexpected commit detail record: {chunk[:80]!r}")
        sha, author_name, author_email, authored, sig_status, signer, subject = fields[:7]
        message = _FIELD_SEP.join(fields[7:]).rstrip("\n")
        details[sha] = CommitDetail(
            sha=sha,
            authorName=author_name,
            authorEmail=author_email,
            authoredAt=_iso_from_epoch(authored),
            subject=subject,
            message=message,
            signature=CommitSignature(
                status=sig_status or "N",
                signer=signer,
                verified=sig_status in _VERIFIED_SIGNATURES,
            ),
        )
    return details


class GitRepository:
    """Handle on an on-disk git repository (bare or working tree)."""

    def __init__(self, path: Path, git_binary: str | None = None):
        self.path = path
        self.git_binary = git_binary or config.GIT_BINARY

    @classmethod
    async def open(cls, path: str | Path, git_binary: str | None = None) -> "GitRepository":
        repo = cls(Path(path), git_binary)
        if not repo.path.exists():
            raise VcsError(f"repository path does not exist: {repo.path}")
        stdout = await repo._run("rev-parse", "--git-dir")
        if not stdout.strip():
            raise VcsError(f"not a git repository: {repo.path}")
        return repo

    async def _spawn(
        self, *args: str, limit: int = 2 ** 16, stdin: bool = False,
    ) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                self.git_binary, "-C", str(self.path), *args,
                stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=limit,
            )
        except OSError as exc:
            raise VcsError(f"unable to run {self.git_binary}: {exc}") from exc

    async def _run(self, *args: str, input_data: bytes | None = None) -> str:
        process = await self._spawn(*args, stdin=input_data is not None)
        try:
            stdout, stderr = await process.communicate(input_data)
        except asyncio.CancelledError:
            _kill(process)
            raise
        if process.returncode != 0:
            raise VcsError(
                f"git {args[0]} failed in {self.path} (exit {process.returncode}): "
                f"{stderr.decode('utf-8', errors='replace').strip()}"
            )
        return stdout.decode("utf-8", errors="replace")

    @asynccontextmanager
    async def commit_log(self) -> AsyncIterator[asyncio.StreamReader]:
        """Yield the stdout pipe of ``git log --all`` in the ticket log format.

        The exit status is checked when the block ends; a failing git process
        raises VcsError even if part of the stream was consumed.
        """
        process = await self._spawn(
            "log", f"--pretty=format:{COMMIT_LOG_FORMAT}", "--all",
            limit=MAX_LINE_BYTES + 2,
        )
        assert process.stdout is not None and process.stderr is not None
        stderr_task = asyncio.ensure_future(process.stderr.read())
        completed = False
        try:
            yield process.stdout
            completed = True
        finally:
            if not completed:
                _kill(process)
                stderr_task.cancel()
                await process.wait()
        # Drain whatever the consumer left so git is not blocked on a full pipe.
        while await process.stdout.read(65536):
            pass
        returncode = await process.wait()
        stderr = await stderr_task
        if returncode != 0:
            raise VcsError(
                f"git log failed in {self.path} (exit {returncode}): "
                f"{stderr.decode('utf-8', errors='replace').strip()}"
            )

    async def ticket_commits(self) -> list[ParsedCommitRecord]:
        """Parse the full history of all refs into ticket records."""
        records: list[ParsedCommitRecord] = []
        async with self.commit_log() as stream:
            async for record in aiter_commit_records(stream):
                records.append(record)
        return records

    async def resolve_commits(self, shas: list[str]) -> set[str]:
        """Return the subset of ``shas`` that name commits in this repository."""
        if not shas:
            return set()
        output = await self._run(
            "cat-file", "--batch-check=%(objectname) %(objecttype)",
            input_data=("\n".join(shas) + "\n").encode("utf-8"),
        )
        found: set[str] = set()
        for line in output.splitlines():
            # Unresolvable input comes back as "<input> missing" (or "ambiguous").
            name, _, kind = line.rpartition(" ")
            if kind == "commit":
                found.add(name)
        return found

    async def get_commits(self, shas: list[str]) -> list[CommitDetail]:
        """Hydrate commits in the given order.

        SHAs that no longer resolve (rewritten history, pruned objects) are
        logged and left out.
        """
        known = await self.resolve_commits(shas)
        missing = [sha for sha in shas if sha not in known]
        if missing:
            logger.warning(
                "Skipping %d unknown commit(s) in %s: %s",
                len(missing), self.path, ", ".join(missing[:5]),
            )
        shas = [sha for sha in shas if sha in known]
        if not shas:
            return []
        output = await self._run(
            "log", "--no-walk=unsorted", f"--format={_DETAIL_FORMAT}", *shas, "--",
        )
        details = _parse_commit_details(output)
        commits: list[CommitDetail] = []
        for sha in shas:
            detail = details.get(sha)
            if detail is None:
                raise VcsError(f"commit {sha} not found in {self.path}")
            commits.append(detail)
        return commits


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
