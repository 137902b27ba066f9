"""Local-file durable store: one JSON document per scrape session."""
from __future__ import annotations

import json
import logging
import random
import string
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import LockTimeoutError, SessionNotFoundError, SessionStateError
from .models import (
    CommitOutcome,
    CommitStatus,
    Profile,
    Record,
    SessionHeader,
    SessionOrigin,
    SessionStatus,
    utc_now_iso,
)
from .session_lock import DEFAULT_LEASE_SECONDS, DEFAULT_POLL_INTERVAL_SECONDS, SessionFileLock
from .staging_store import validate_session_id

LOGGER = logging.getLogger(__name__)

_FILE_PREFIXES = {
    SessionOrigin.APP: "session_",
    SessionOrigin.API: "sessionapi_",
}
_ID_ALPHABET = string.ascii_lowercase + string.digits


class _CorruptSessionFile(Exception):
    pass


class LocalSessionStore:
    """Authoritative local backend.

    Every mutation is a read-modify-write of the whole session document under
    a :class:`SessionFileLock`; the new document is written to a temp file and
    renamed over the target so readers never observe a partial write.
    """

    def __init__(
        self,
        data_dir: Path,
        *,
        lock_poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        lock_lease_seconds: float = DEFAULT_LEASE_SECONDS,
        lock_timeout_seconds: Optional[float] = None,
    ) -> None:
        self._data_dir = Path(data_dir).expanduser()
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._lock_poll_interval = lock_poll_interval_seconds
        self._lock_lease = lock_lease_seconds
        self._lock_timeout = lock_timeout_seconds

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def session_path(self, session_id: str, origin: SessionOrigin) -> Path:
        prefix = _FILE_PREFIXES[SessionOrigin(origin)]
        return self._data_dir / f"{prefix}{validate_session_id(session_id)}.json"

    def new_session_id(self) -> str:
        suffix = "".join(random.choices(_ID_ALPHABET, k=9))
        return f"local_{int(time.time() * 1000)}_{suffix}"

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    def open_session(self, header: SessionHeader) -> SessionHeader:
        path = self.session_path(header.session_id, header.origin)
        with self._lock(path):
            if path.exists():
                raise SessionStateError(f"Session file already exists: {path}")
            document = self._new_document(header)
            self._write_document(path, document)
        LOGGER.info("Opened local session %s at %s", header.session_id, path.name)
        return header

    def commit_record(self, session: SessionHeader, record: Record) -> CommitOutcome:
        path = self.session_path(session.session_id, session.origin)
        try:
            with self._lock(path):
                document = self._load_for_update(path, session)
                if SessionStatus(document["status"]).is_terminal:
                    return CommitOutcome(
                        record_id=record.record_id,
                        status=CommitStatus.FAILED,
                        detail=f"session {session.session_id} is already {document['status']}",
                    )
                status = self._merge_record(document, record)
                self._write_document(path, document)
        except LockTimeoutError as exc:
            LOGGER.warning("Commit of %s deferred: %s", record.record_id, exc)
            return CommitOutcome(record.record_id, CommitStatus.TRANSIENT, detail=str(exc))
        except OSError as exc:
            LOGGER.error("Local commit of %s failed: %s", record.record_id, exc)
            return CommitOutcome(record.record_id, CommitStatus.FAILED, detail=str(exc))

        if status is CommitStatus.REFRESHED:
            LOGGER.debug("Record %s already committed; refreshed metrics", record.record_id)
        return CommitOutcome(record_id=record.record_id, status=status)

    def committed_count(self, session: SessionHeader) -> int:
        document = self._read_document(self.session_path(session.session_id, session.origin))
        if document is None:
            return 0
        return len(document["records"])

    def close_session(
        self,
        session: SessionHeader,
        status: SessionStatus,
        committed_count: int,
    ) -> SessionHeader:
        if not SessionStatus(status).is_terminal:
            raise SessionStateError(f"Cannot close session with non-terminal status {status!r}")
        path = self.session_path(session.session_id, session.origin)
        with self._lock(path):
            document = self._load_for_update(path, session)
            current = SessionStatus(document["status"])
            if current.is_terminal:
                raise SessionStateError(
                    f"Session {session.session_id} already closed as {current.value}"
                )
            now = utc_now_iso()
            document["status"] = SessionStatus(status).value
            document["closed_at"] = now
            document["updated_at"] = now
            document["committed_count"] = committed_count
            document["encrypted"] = session.encrypted
            self._write_document(path, document)
        LOGGER.info(
            "Closed local session %s as %s (%s record(s))",
            session.session_id,
            SessionStatus(status).value,
            committed_count,
        )
        return SessionHeader.from_dict(document)

    def save_profile(self, session: SessionHeader, profile: Profile) -> None:
        path = self.session_path(session.session_id, session.origin)
        with self._lock(path):
            document = self._load_for_update(path, session)
            now = utc_now_iso()
            document["profile"] = dict(profile.to_dict(), updated_at=now, last_scraped_at=now)
            document["updated_at"] = now
            self._write_document(path, document)
        LOGGER.debug("Saved profile @%s into session %s", profile.handle, session.session_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def load_session(self, session_id: str, origin: SessionOrigin) -> Optional[SessionHeader]:
        document = self._read_document(self.session_path(session_id, origin))
        if document is None:
            return None
        return SessionHeader.from_dict(document)

    def fetch_committed(self, session_id: str, origin: SessionOrigin) -> List[Record]:
        path = self.session_path(session_id, origin)
        if not path.exists():
            raise SessionNotFoundError(f"No local session file for {session_id} ({origin})")
        document = self._read_document(path)
        if document is None:
            return []
        return [Record.from_dict(item) for item in document["records"]]

    def list_sessions(self) -> List[SessionHeader]:
        headers: List[SessionHeader] = []
        for prefix in _FILE_PREFIXES.values():
            for path in self._data_dir.glob(f"{prefix}*.json"):
                document = self._read_document(path)
                if document is None:
                    continue
                headers.append(SessionHeader.from_dict(document))
        headers.sort(key=lambda header: header.opened_at, reverse=True)
        return headers

    def delete_session(self, session_id: str, origin: SessionOrigin) -> bool:
        path = self.session_path(session_id, origin)
        with self._lock(path) as lock:
            try:
                path.unlink()
            except FileNotFoundError:
                LOGGER.info("Session file %s not found; already deleted?", path.name)
                return False
            lock.discard()
        LOGGER.info("Deleted local session %s", session_id)
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _lock(self, path: Path) -> SessionFileLock:
        return SessionFileLock(
            path,
            poll_interval_seconds=self._lock_poll_interval,
            lease_seconds=self._lock_lease,
            timeout_seconds=self._lock_timeout,
        )

    @staticmethod
    def _new_document(header: SessionHeader) -> Dict[str, Any]:
        document = header.to_dict()
        document["committed_count"] = 0
        document["profile"] = None
        document["records"] = []
        return document

    @staticmethod
    def _merge_record(document: Dict[str, Any], record: Record) -> CommitStatus:
        records: List[Dict[str, Any]] = document["records"]
        now = record.saved_at
        for index, existing in enumerate(records):
            if existing.get("record_id") == record.record_id:
                refreshed = Record.from_dict(existing).refreshed_from(record)
                records[index] = refreshed.to_dict()
                document["updated_at"] = now
                return CommitStatus.REFRESHED
        records.append(record.to_dict())
        document["committed_count"] = len(records)
        document["updated_at"] = now
        return CommitStatus.INSERTED

    def _load_for_update(self, path: Path, session: SessionHeader) -> Dict[str, Any]:
        """Load a document while holding its lock, quarantining corrupt files."""

        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            LOGGER.warning("Session file %s missing; re-initializing from header", path.name)
            return self._new_document(session)
        try:
            return self._parse_document(raw)
        except _CorruptSessionFile as exc:
            quarantine = self._quarantine(path)
            LOGGER.error(
                "Corrupt session file %s (%s); moved to %s and re-initialized",
                path.name,
                exc,
                quarantine.name,
            )
            return self._new_document(session)

    def _read_document(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return self._parse_document(raw)
        except _CorruptSessionFile as exc:
            LOGGER.error("Ignoring corrupt session file %s: %s", path.name, exc)
            return None

    @staticmethod
    def _parse_document(raw: str) -> Dict[str, Any]:
        if not raw.strip():
            raise _CorruptSessionFile("empty file")
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise _CorruptSessionFile(str(exc)) from exc
        if not isinstance(document, dict):
            raise _CorruptSessionFile("document is not an object")
        if not document.get("session_id") or not isinstance(document.get("records"), list):
            raise _CorruptSessionFile("missing session_id or records")
        try:
            SessionHeader.from_dict(document)
            for item in document["records"]:
                Record.from_dict(item)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise _CorruptSessionFile(f"invalid field: {exc}") from exc
        return document

    @staticmethod
    def _write_document(path: Path, document: Dict[str, Any]) -> None:
        tmp_path = path.with_name(f"{path.name}.tmp")
        tmp_path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        tmp_path.replace(path)

    @staticmethod
    def _quarantine(path: Path) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        target = path.with_name(f"{path.name}.corrupt-{stamp}")
        path.replace(target)
        return target
