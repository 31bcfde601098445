"""Pydantic models shared by services and the JSON API."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


# ── Principals & catalog ───────────────────────────────────────────

class Principal(BaseModel):
    id: Optional[int] = None  # None for anonymous requests
    isAdmin: bool = False

    @property
    def is_anonymous(self) -> bool:
        return self.id is None


class Repository(BaseModel):
    id: int
    ownerId: int = 0
    ownerName: str = ""
    name: str
    path: str
    isPrivate: bool = False
    ownerVisibility: str = "public"  # "public" | "limited" | "private"
    isEmpty: bool = False
    isMirror: bool = False
    createdAt: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.ownerName}/{self.name}" if self.ownerName else self.name


class MirrorInfo(BaseModel):
    repoId: int
    remoteAddress: str = ""
    intervalSeconds: int = 0
    updatedUnix: int = 0
    nextUpdateUnix: int = 0


# ── Commits & links ────────────────────────────────────────────────

class CommitTicketLink(BaseModel):
    id: int
    repoId: int
    ticket: str
    sha: str
    createdUnix: int


class CommitSignature(BaseModel):
    status: str = "N"  # git %G? code
    signer: str = ""
    verified: bool = False


class CommitDetail(BaseModel):
    sha: str
    authorName: str = ""
    authorEmail: str = ""
    authoredAt: str = ""
    subject: str = ""
    message: str = ""
    signature: CommitSignature = Field(default_factory=CommitSignature)


# ── Ticket aggregate ───────────────────────────────────────────────

class RepositoryCommits(BaseModel):
    repository: Repository
    pullMirror: Optional[MirrorInfo] = None
    commits: list[CommitDetail] = Field(default_factory=list)


class TicketAggregate(BaseModel):
    ticketId: str
    totalCommits: int = 0
    repositories: list[RepositoryCommits] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.repositories
