"""Durable store contract and the one-time backend selection."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Protocol, Union

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from ..config import LockSettings, StorageSettings, get_lock_settings
from .mirrored_store import MirroredSessionStore
from .models import CommitOutcome, Profile, Record, SessionHeader, SessionOrigin, SessionStatus
from .session_store import LocalSessionStore
from .shared_store import SharedSessionStore

LOGGER = logging.getLogger(__name__)


class DurableStore(Protocol):
    """Operations every durable backend offers; callers never branch on mode."""

    def new_session_id(self) -> str:
        ...

    def open_session(self, header: SessionHeader) -> SessionHeader:
        ...

    def commit_record(self, session: SessionHeader, record: Record) -> CommitOutcome:
        ...

    def committed_count(self, session: SessionHeader) -> int:
        ...

    def close_session(
        self, session: SessionHeader, status: SessionStatus, committed_count: int
    ) -> SessionHeader:
        ...

    def fetch_committed(self, session_id: str, origin: SessionOrigin) -> List[Record]:
        ...

    def load_session(self, session_id: str, origin: SessionOrigin) -> Optional[SessionHeader]:
        ...

    def list_sessions(self) -> List[SessionHeader]:
        ...

    def delete_session(self, session_id: str, origin: SessionOrigin) -> bool:
        ...

    def save_profile(self, session: SessionHeader, profile: Profile) -> None:
        ...


AnyStore = Union[LocalSessionStore, SharedSessionStore, MirroredSessionStore]


def create_shared_engine(url: str) -> Engine:
    if url.startswith("sqlite:///"):
        # SQLite needs its parent directory to exist before the first connect.
        db_path = Path(url[len("sqlite:///"):]).expanduser()
        if str(db_path) not in ("", ":memory:"):
            db_path.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, future=True, pool_pre_ping=True)


def build_durable_store(
    settings: StorageSettings,
    engine: Optional[Engine] = None,
    lock_settings: Optional[LockSettings] = None,
) -> AnyStore:
    """Choose the durable backend once, from configuration."""

    if settings.backend == "shared":
        shared = SharedSessionStore(engine or create_shared_engine(settings.shared_db_url))
        LOGGER.info("Using shared durable store (%s)", shared.engine.url.render_as_string(hide_password=True))
        return shared

    locks = lock_settings or get_lock_settings()
    local = LocalSessionStore(
        settings.local_data_dir,
        lock_poll_interval_seconds=locks.poll_interval_seconds,
        lock_lease_seconds=locks.lease_seconds,
        lock_timeout_seconds=locks.timeout_seconds,
    )
    if not settings.share_data:
        LOGGER.info("Using local durable store at %s", settings.local_data_dir)
        return local

    mirror = SharedSessionStore(engine or create_shared_engine(settings.shared_db_url))
    LOGGER.info(
        "Using local durable store at %s mirrored to %s",
        settings.local_data_dir,
        mirror.engine.url.render_as_string(hide_password=True),
    )
    return MirroredSessionStore(local, mirror)
