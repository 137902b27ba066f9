"""Local-authoritative store that best-effort mirrors every write to a shared store."""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..errors import ScrapeVaultError
from .models import (
    CommitOutcome,
    MirrorStatus,
    Profile,
    Record,
    SessionHeader,
    SessionOrigin,
    SessionStatus,
)
from .session_store import LocalSessionStore
from .shared_store import SharedSessionStore

LOGGER = logging.getLogger(__name__)

_MIRROR_ERRORS = (ScrapeVaultError, SQLAlchemyError, OSError)


class MirroredSessionStore:
    """Commit to the local file first, then copy the write to the shared store.

    Only the primary decides success and counts. A mirror failure is logged
    and reported on the outcome; it never rolls back the local write.
    """

    def __init__(self, primary: LocalSessionStore, mirror: SharedSessionStore) -> None:
        self._primary = primary
        self._mirror = mirror

    @property
    def primary(self) -> LocalSessionStore:
        return self._primary

    @property
    def mirror(self) -> SharedSessionStore:
        return self._mirror

    def new_session_id(self) -> str:
        return self._primary.new_session_id()

    def open_session(self, header: SessionHeader) -> SessionHeader:
        opened = self._primary.open_session(header)
        self._mirror_call("open_session", header.session_id, self._mirror.open_session, header)
        return opened

    def commit_record(self, session: SessionHeader, record: Record) -> CommitOutcome:
        outcome = self._primary.commit_record(session, record)
        if not outcome.ok:
            return outcome
        try:
            mirrored = self._mirror.commit_record(session, record)
        except _MIRROR_ERRORS as exc:
            LOGGER.warning("Mirror commit of %s raised: %s", record.record_id, exc)
            return replace(outcome, mirror=MirrorStatus.FAILED, detail=str(exc))
        if not mirrored.ok:
            LOGGER.warning(
                "Mirror commit of %s in session %s returned %s: %s",
                record.record_id,
                session.session_id,
                mirrored.status.value,
                mirrored.detail,
            )
            return replace(outcome, mirror=MirrorStatus.FAILED, detail=mirrored.detail)
        return replace(outcome, mirror=MirrorStatus.MIRRORED)

    def committed_count(self, session: SessionHeader) -> int:
        return self._primary.committed_count(session)

    def close_session(
        self,
        session: SessionHeader,
        status: SessionStatus,
        committed_count: int,
    ) -> SessionHeader:
        closed = self._primary.close_session(session, status, committed_count)
        self._mirror_call(
            "close_session",
            session.session_id,
            self._mirror.close_session,
            session,
            status,
            committed_count,
        )
        return closed

    def save_profile(self, session: SessionHeader, profile: Profile) -> None:
        self._primary.save_profile(session, profile)
        self._mirror_call("save_profile", session.session_id, self._mirror.save_profile, session, profile)

    def load_session(self, session_id: str, origin: SessionOrigin) -> Optional[SessionHeader]:
        return self._primary.load_session(session_id, origin)

    def fetch_committed(self, session_id: str, origin: SessionOrigin) -> List[Record]:
        return self._primary.fetch_committed(session_id, origin)

    def list_sessions(self) -> List[SessionHeader]:
        return self._primary.list_sessions()

    def delete_session(self, session_id: str, origin: SessionOrigin) -> bool:
        deleted = self._primary.delete_session(session_id, origin)
        self._mirror_call("delete_session", session_id, self._mirror.delete_session, session_id, origin)
        return deleted

    def _mirror_call(self, op_name: str, session_id: str, fn, *args) -> bool:
        try:
            fn(*args)
        except _MIRROR_ERRORS as exc:
            LOGGER.warning("Mirror %s failed for session %s: %s", op_name, session_id, exc)
            return False
        return True
