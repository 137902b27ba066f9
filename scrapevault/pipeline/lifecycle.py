"""Session lifecycle: open, tally commits, derive and persist the terminal status."""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Optional, Union

from ..data.durable_store import DurableStore
from ..data.models import (
    CommitOutcome,
    CommitStatus,
    MirrorStatus,
    SessionHeader,
    SessionKind,
    SessionOrigin,
    SessionStatus,
    utc_now_iso,
)
from ..data.staging_store import StagingStore
from ..errors import SessionStateError, TransientStoreError

LOGGER = logging.getLogger(__name__)


def derive_terminal_status(committed_count: int, failed: bool) -> SessionStatus:
    """``failed`` is sticky; otherwise any committed record means completed."""

    if failed:
        return SessionStatus.FAILED
    if committed_count > 0:
        return SessionStatus.COMPLETED
    return SessionStatus.INCOMPLETE


@dataclass
class SessionHandle:
    """In-flight session state owned by one pipeline run."""

    header: SessionHeader
    inserted: int = 0
    refreshed: int = 0
    failure: Optional[str] = None
    closed: bool = False

    @property
    def session_id(self) -> str:
        return self.header.session_id

    @property
    def failed(self) -> bool:
        return self.failure is not None


class SessionLifecycle:
    def __init__(self, store: DurableStore, staging: StagingStore) -> None:
        self._store = store
        self._staging = staging

    def open(
        self,
        kind: SessionKind,
        target: Optional[str],
        origin: SessionOrigin = SessionOrigin.APP,
        encrypted: bool = False,
    ) -> SessionHandle:
        header = SessionHeader(
            session_id=self._store.new_session_id(),
            kind=SessionKind(kind),
            target=target,
            origin=SessionOrigin(origin),
            encrypted=encrypted,
            status=SessionStatus.OPEN,
            opened_at=utc_now_iso(),
        )
        self._store.open_session(header)
        LOGGER.info(
            "Session %s opened (%s, target=%s, origin=%s)",
            header.session_id,
            header.kind.value,
            header.target or "-",
            header.origin.value,
        )
        return SessionHandle(header=header)

    def record_commit(self, handle: SessionHandle, outcome: CommitOutcome) -> None:
        self._require_open(handle, "record a commit")
        if outcome.status is CommitStatus.INSERTED:
            handle.inserted += 1
        elif outcome.status is CommitStatus.REFRESHED:
            handle.refreshed += 1
        if outcome.mirror is MirrorStatus.FAILED:
            LOGGER.debug("Record %s not mirrored: %s", outcome.record_id, outcome.detail)

    def mark_failed(self, handle: SessionHandle, error: Union[BaseException, str]) -> None:
        self._require_open(handle, "mark failed")
        if handle.failure is None:
            handle.failure = str(error) or error.__class__.__name__
        LOGGER.error("Session %s marked failed: %s", handle.session_id, handle.failure)

    def close(self, handle: SessionHandle) -> SessionHeader:
        """Assign the terminal status exactly once and settle the staging snapshot."""

        self._require_open(handle, "close")
        try:
            count = self._store.committed_count(handle.header)
        except TransientStoreError as exc:
            LOGGER.warning(
                "Could not read committed count for %s (%s); using in-run tally %s",
                handle.session_id,
                exc,
                handle.inserted,
            )
            count = handle.inserted

        status = derive_terminal_status(count, handle.failed)
        handle.closed = True
        try:
            closed = self._store.close_session(handle.header, status, count)
        except TransientStoreError as exc:
            LOGGER.error(
                "Session %s could not be closed durably (%s); staging snapshot retained",
                handle.session_id,
                exc,
            )
            closed = replace(
                handle.header, status=status, committed_count=count, closed_at=utc_now_iso()
            )
            handle.header = closed
            return closed

        handle.header = closed
        if status is SessionStatus.COMPLETED:
            self._staging.delete(handle.session_id)
        else:
            LOGGER.info(
                "Session %s closed %s; staging snapshot retained for recovery",
                handle.session_id,
                status.value,
            )
        LOGGER.info(
            "Session %s closed: %s with %s committed record(s)",
            handle.session_id,
            status.value,
            count,
        )
        return closed

    @staticmethod
    def _require_open(handle: SessionHandle, action: str) -> None:
        if handle.closed:
            raise SessionStateError(
                f"Cannot {action} on session {handle.session_id}: already {handle.header.status.value}"
            )
