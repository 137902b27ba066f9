"""Scrape pipeline: producer batches -> staging snapshot -> per-record durable commits."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy.engine import Engine

from ..config import LockSettings, StorageSettings, get_storage_settings
from ..data.durable_store import DurableStore, build_durable_store
from ..data.metrics import normalize_metric, normalize_metrics
from ..data.models import (
    CommitStatus,
    MirrorStatus,
    Profile,
    Record,
    SessionHeader,
    SessionKind,
    SessionOrigin,
    SessionStatus,
    StagingSnapshot,
    utc_now_iso,
)
from ..data.staging_store import StagingStore
from ..errors import MalformedRecordError, ScrapeVaultError, SessionNotFoundError
from .lifecycle import SessionHandle, SessionLifecycle
from .producer import RecordProducer, StaticRecordProducer

LOGGER = logging.getLogger(__name__)

STATUS_MARKER = "/status/"


def derive_record_id(source_url: Any) -> str:
    """Return the path segment after ``/status/`` or raise ``MalformedRecordError``."""

    if not isinstance(source_url, str) or STATUS_MARKER not in source_url:
        raise MalformedRecordError(f"No '{STATUS_MARKER}' marker in source url {source_url!r}")
    tail = source_url.split(STATUS_MARKER, 1)[1]
    record_id = tail.split("?", 1)[0].split("#", 1)[0].split("/", 1)[0].strip()
    if not record_id:
        raise MalformedRecordError(f"Empty record id in source url {source_url!r}")
    return record_id


def _author_fields(raw: Mapping[str, Any]) -> tuple:
    author = raw.get("author") or raw.get("user")
    if isinstance(author, str):
        return author, None
    if isinstance(author, Mapping):
        handle = author.get("handle") or author.get("username")
        return handle, author.get("name") or author.get("display_name")
    return None, None


def _posted_at(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def build_record(raw: Mapping[str, Any], saved_at: Optional[str] = None) -> Record:
    """Turn one raw producer record into a normalized :class:`Record`."""

    source_url = raw.get("source_url") or raw.get("url")
    record_id = derive_record_id(source_url)
    handle, name = _author_fields(raw)
    return Record(
        record_id=record_id,
        author_handle=handle,
        author_name=name,
        content=str(raw.get("content") or raw.get("text") or ""),
        posted_at=_posted_at(raw.get("posted_at") or raw.get("timestamp")),
        metrics=normalize_metrics(raw.get("metrics")),
        source_url=source_url,
        saved_at=saved_at or utc_now_iso(),
    )


def build_profile(raw: Mapping[str, Any], fallback_handle: Optional[str]) -> Profile:
    handle = raw.get("handle") or raw.get("username") or fallback_handle
    if not handle:
        raise MalformedRecordError("Profile payload has no handle")
    return Profile(
        handle=str(handle).lstrip("@"),
        name=raw.get("name"),
        bio=raw.get("bio"),
        followers_count=normalize_metric(raw.get("followers_count", raw.get("followers"))),
        following_count=normalize_metric(raw.get("following_count", raw.get("following"))),
        posts_count=normalize_metric(raw.get("posts_count", raw.get("posts"))),
    )


@dataclass(frozen=True)
class SessionResult:
    """What a caller learns about one finished session run."""

    session_id: str
    origin: SessionOrigin
    status: SessionStatus
    records_committed: int
    records_failed: int
    records_rejected: int = 0
    records_duplicate: int = 0
    mirror_failures: int = 0
    committed_count: int = 0
    error: Optional[str] = None
    profile: Optional[Profile] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "origin": self.origin.value,
            "status": self.status.value,
            "records_committed": self.records_committed,
            "records_failed": self.records_failed,
            "records_rejected": self.records_rejected,
            "records_duplicate": self.records_duplicate,
            "mirror_failures": self.mirror_failures,
            "committed_count": self.committed_count,
            "error": self.error,
            "profile": self.profile.to_dict() if self.profile else None,
        }


@dataclass
class _RunCounters:
    committed: int = 0
    failed: int = 0
    rejected: int = 0
    duplicate: int = 0
    mirror_failures: int = 0


class ScrapePipeline:
    """Run scrape sessions end to end against one durable store.

    The producer and the commit loop run sequentially inside a session;
    separate sessions may run concurrently on the same pipeline.
    """

    def __init__(
        self,
        store: DurableStore,
        staging: StagingStore,
        producer: Optional[RecordProducer] = None,
    ) -> None:
        self._store = store
        self._staging = staging
        self._producer = producer
        self._lifecycle = SessionLifecycle(store, staging)

    @property
    def store(self) -> DurableStore:
        return self._store

    @property
    def staging(self) -> StagingStore:
        return self._staging

    @property
    def producer(self) -> Optional[RecordProducer]:
        return self._producer

    def run_session(
        self,
        kind: SessionKind,
        target: Optional[str] = None,
        origin: SessionOrigin = SessionOrigin.APP,
        *,
        desired_count: int = 10,
        encrypted: bool = False,
        producer: Optional[RecordProducer] = None,
    ) -> SessionResult:
        source = producer or self._producer
        if source is None:
            raise RuntimeError("ScrapePipeline has no record producer configured")
        kind = SessionKind(kind)

        handle = self._lifecycle.open(kind, target, origin, encrypted)
        counters = _RunCounters()
        staged: List[Dict[str, Any]] = []
        profile: Optional[Profile] = None
        self._stage(handle, staged)

        try:
            is_ready = getattr(source, "is_ready", None)
            if callable(is_ready) and not is_ready():
                raise RuntimeError("Record producer is not ready")
            for batch in source.batches(kind, target, desired_count):
                raw_batch = [dict(raw) for raw in batch]
                staged.extend(raw_batch)
                self._stage(handle, staged)
                self._commit_batch(handle, raw_batch, counters)
            if kind is SessionKind.PROFILE:
                profile = self._persist_profile(handle, source, target)
        except Exception as exc:  # producer failure ends the session as failed
            LOGGER.exception("Producer failed during session %s", handle.session_id)
            self._lifecycle.mark_failed(handle, exc)

        closed = self._lifecycle.close(handle)
        result = SessionResult(
            session_id=closed.session_id,
            origin=closed.origin,
            status=closed.status,
            records_committed=counters.committed,
            records_failed=counters.failed,
            records_rejected=counters.rejected,
            records_duplicate=counters.duplicate,
            mirror_failures=counters.mirror_failures,
            committed_count=closed.committed_count,
            error=handle.failure,
            profile=profile,
        )
        LOGGER.info(
            "Session %s finished %s: committed=%s failed=%s rejected=%s duplicate=%s",
            result.session_id,
            result.status.value,
            result.records_committed,
            result.records_failed,
            result.records_rejected,
            result.records_duplicate,
        )
        return result

    def fetch_committed(
        self, session_id: str, origin: SessionOrigin = SessionOrigin.APP
    ) -> List[Record]:
        """Re-read exactly the committed record set of a session from the store."""

        return self._store.fetch_committed(session_id, SessionOrigin(origin))

    def load_session(
        self, session_id: str, origin: SessionOrigin = SessionOrigin.APP
    ) -> Optional[SessionHeader]:
        return self._store.load_session(session_id, SessionOrigin(origin))

    def list_sessions(self) -> List[SessionHeader]:
        return self._store.list_sessions()

    def delete_session(self, session_id: str, origin: SessionOrigin = SessionOrigin.APP) -> bool:
        deleted = self._store.delete_session(session_id, SessionOrigin(origin))
        self._staging.delete(session_id)
        return deleted

    def recover(
        self, session_id: str, origin: SessionOrigin = SessionOrigin.APP
    ) -> SessionResult:
        """Replay a retained staging snapshot into a new session without re-scraping."""

        snapshot = self._staging.read(session_id)
        if snapshot is None:
            raise SessionNotFoundError(f"No staging snapshot retained for session {session_id}")
        LOGGER.info(
            "Recovering session %s from %s staged record(s)", session_id, len(snapshot.records)
        )
        result = self.run_session(
            snapshot.kind,
            snapshot.target,
            origin,
            desired_count=len(snapshot.records),
            producer=StaticRecordProducer.from_snapshot(snapshot),
        )
        if result.status is SessionStatus.COMPLETED:
            self._staging.delete(session_id)
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _stage(self, handle: SessionHandle, staged: Sequence[Mapping[str, Any]]) -> None:
        header = handle.header
        self._staging.write(
            header.session_id,
            StagingSnapshot(
                session_id=header.session_id,
                kind=header.kind,
                target=header.target,
                records=list(staged),
            ),
        )

    def _commit_batch(
        self,
        handle: SessionHandle,
        batch: Sequence[Mapping[str, Any]],
        counters: _RunCounters,
    ) -> None:
        for raw in batch:
            try:
                record = build_record(raw)
            except MalformedRecordError as exc:
                counters.rejected += 1
                LOGGER.warning("Rejected record in session %s: %s", handle.session_id, exc)
                continue

            try:
                outcome = self._store.commit_record(handle.header, record)
            except Exception as exc:  # one bad record never aborts the session
                counters.failed += 1
                LOGGER.error(
                    "Commit of %s in session %s raised: %s",
                    record.record_id,
                    handle.session_id,
                    exc,
                )
                continue

            self._lifecycle.record_commit(handle, outcome)
            if outcome.ok:
                counters.committed += 1
                if outcome.status is CommitStatus.REFRESHED:
                    counters.duplicate += 1
            else:
                counters.failed += 1
                LOGGER.warning(
                    "Record %s not committed (%s): %s",
                    record.record_id,
                    outcome.status.value,
                    outcome.detail,
                )
            if outcome.mirror is MirrorStatus.FAILED:
                counters.mirror_failures += 1

    def _persist_profile(
        self, handle: SessionHandle, source: RecordProducer, target: Optional[str]
    ) -> Optional[Profile]:
        fetch_profile = getattr(source, "fetch_profile", None)
        if not callable(fetch_profile):
            return None
        raw = fetch_profile(target)
        if not raw:
            LOGGER.info("No profile payload for @%s", target or "-")
            return None
        profile = raw if isinstance(raw, Profile) else build_profile(raw, target)
        try:
            self._store.save_profile(handle.header, profile)
        except (ScrapeVaultError, OSError) as exc:
            LOGGER.warning(
                "Profile @%s not saved for session %s: %s", profile.handle, handle.session_id, exc
            )
            return None
        return profile


def build_pipeline(
    producer: Optional[RecordProducer] = None,
    *,
    settings: Optional[StorageSettings] = None,
    lock_settings: Optional[LockSettings] = None,
    engine: Optional[Engine] = None,
    clear_staging: bool = True,
) -> ScrapePipeline:
    """Wire a pipeline from environment settings (scripts and the API server)."""

    settings = settings or get_storage_settings()
    store = build_durable_store(settings, engine=engine, lock_settings=lock_settings)
    staging = StagingStore(settings.staging_dir, clear_on_init=clear_staging)
    return ScrapePipeline(store, staging, producer)
