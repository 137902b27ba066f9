"""Typed records shared by the staging store, durable stores and pipeline."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionKind(str, Enum):
    PROFILE = "profile"
    SEARCH = "search"
    TIMELINE = "timeline"
    DIAGNOSTIC = "diagnostic"


class SessionOrigin(str, Enum):
    """Who started the session: the interactive app or the delegated API."""

    APP = "app"
    API = "api"


class SessionStatus(str, Enum):
    OPEN = "open"
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.OPEN


class CommitStatus(str, Enum):
    INSERTED = "inserted"
    REFRESHED = "refreshed"
    TRANSIENT = "transient"
    FAILED = "failed"


class MirrorStatus(str, Enum):
    DISABLED = "disabled"
    MIRRORED = "mirrored"
    FAILED = "failed"


@dataclass(frozen=True)
class Record:
    """One committed post, deduplicated per session by ``record_id``."""

    record_id: str
    author_handle: Optional[str]
    author_name: Optional[str]
    content: str
    posted_at: Optional[str]
    metrics: Dict[str, int]
    source_url: str
    saved_at: str
    updated_at: Optional[str] = None

    def refreshed_from(self, newer: "Record") -> "Record":
        """Return this record with the mutable counters taken from ``newer``."""

        return replace(self, metrics=dict(newer.metrics), updated_at=newer.saved_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "author": {"handle": self.author_handle, "name": self.author_name},
            "content": self.content,
            "posted_at": self.posted_at,
            "metrics": dict(self.metrics),
            "source_url": self.source_url,
            "saved_at": self.saved_at,
            "updated_at": self.updated_at or self.saved_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Record":
        author = payload.get("author") or {}
        return cls(
            record_id=str(payload["record_id"]),
            author_handle=author.get("handle"),
            author_name=author.get("name"),
            content=payload.get("content") or "",
            posted_at=payload.get("posted_at"),
            metrics={str(k): int(v) for k, v in (payload.get("metrics") or {}).items()},
            source_url=payload.get("source_url") or "",
            saved_at=payload.get("saved_at") or utc_now_iso(),
            updated_at=payload.get("updated_at"),
        )


@dataclass(frozen=True)
class Profile:
    """Account metadata captured alongside a profile session."""

    handle: str
    name: Optional[str] = None
    bio: Optional[str] = None
    followers_count: int = 0
    following_count: int = 0
    posts_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handle": self.handle,
            "name": self.name,
            "bio": self.bio,
            "followers_count": self.followers_count,
            "following_count": self.following_count,
            "posts_count": self.posts_count,
        }


@dataclass(frozen=True)
class SessionHeader:
    """Session metadata as persisted by a durable store."""

    session_id: str
    kind: SessionKind
    target: Optional[str]
    origin: SessionOrigin
    encrypted: bool
    status: SessionStatus
    opened_at: str
    closed_at: Optional[str] = None
    committed_count: int = 0
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "kind": self.kind.value,
            "target": self.target,
            "origin": self.origin.value,
            "encrypted": self.encrypted,
            "status": self.status.value,
            "opened_at": self.opened_at,
            "closed_at": self.closed_at,
            "committed_count": self.committed_count,
            "updated_at": self.updated_at or self.opened_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SessionHeader":
        return cls(
            session_id=str(payload["session_id"]),
            kind=SessionKind(payload.get("kind") or SessionKind.DIAGNOSTIC.value),
            target=payload.get("target"),
            origin=SessionOrigin(payload.get("origin") or SessionOrigin.APP.value),
            encrypted=bool(payload.get("encrypted", False)),
            status=SessionStatus(payload.get("status") or SessionStatus.OPEN.value),
            opened_at=payload.get("opened_at") or utc_now_iso(),
            closed_at=payload.get("closed_at"),
            committed_count=int(payload.get("committed_count") or 0),
            updated_at=payload.get("updated_at"),
        )


@dataclass(frozen=True)
class StagingSnapshot:
    """Whole-replace write-ahead copy of a session's raw producer output."""

    session_id: str
    kind: SessionKind
    target: Optional[str]
    records: List[Dict[str, Any]] = field(default_factory=list)
    staged_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "kind": self.kind.value,
            "target": self.target,
            "staged_at": self.staged_at,
            "records": list(self.records),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StagingSnapshot":
        records = payload.get("records")
        if not isinstance(records, list):
            raise ValueError("snapshot records must be a list")
        return cls(
            session_id=str(payload["session_id"]),
            kind=SessionKind(payload["kind"]),
            target=payload.get("target"),
            records=[dict(item) for item in records],
            staged_at=payload.get("staged_at") or utc_now_iso(),
        )


@dataclass(frozen=True)
class CommitOutcome:
    """Typed result of committing one record into a durable store."""

    record_id: str
    status: CommitStatus
    mirror: MirrorStatus = MirrorStatus.DISABLED
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (CommitStatus.INSERTED, CommitStatus.REFRESHED)
