"""Shared-network durable store backed by a SQL database via SQLAlchemy Core."""
from __future__ import annotations

import logging
import time
import uuid
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from ..errors import SessionNotFoundError, SessionStateError, TransientStoreError
from .models import (
    CommitOutcome,
    CommitStatus,
    Profile,
    Record,
    SessionHeader,
    SessionKind,
    SessionOrigin,
    SessionStatus,
    utc_now_iso,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class SharedSessionStore:
    """Typed wrapper around the shared scrape database.

    Records are keyed by ``(session_id, record_id)`` so a re-commit inside a
    session is an idempotent upsert while the same post may still appear in
    several sessions.
    """

    SESSION_TABLE = "scrape_session"
    RECORD_TABLE = "scraped_record"
    PROFILE_TABLE = "scraped_profile"
    _RETRYABLE_ERRORS = (
        "disk i/o error",
        "database is locked",
        "could not connect",
        "connection refused",
        "server closed the connection",
        "connection reset",
        "timeout",
    )

    def __init__(
        self,
        engine: Engine,
        *,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
    ) -> None:
        self._engine = engine
        self._max_attempts = max_attempts
        self._base_delay_seconds = base_delay_seconds
        self._metadata = MetaData()
        self._session_table = Table(
            self.SESSION_TABLE,
            self._metadata,
            Column("session_id", String, primary_key=True),
            Column("kind", String, nullable=False),
            Column("target", String, nullable=True),
            Column("origin", String, nullable=False),
            Column("encrypted", Boolean, nullable=False, default=False),
            Column("status", String, nullable=False),
            Column("committed_count", Integer, nullable=False, default=0),
            Column("opened_at", String, nullable=False),
            Column("closed_at", String, nullable=True),
            Column("created_at", String, nullable=False),
            Column("updated_at", String, nullable=False),
        )
        self._record_table = Table(
            self.RECORD_TABLE,
            self._metadata,
            Column("session_id", String, nullable=False),
            Column("record_id", String, nullable=False),
            Column("position", Integer, nullable=False),
            Column("author_handle", String, nullable=True),
            Column("author_name", String, nullable=True),
            Column("content", Text, nullable=False),
            Column("posted_at", String, nullable=True),
            Column("metrics", JSON, nullable=False),
            Column("source_url", String, nullable=False),
            Column("saved_at", String, nullable=False),
            Column("created_at", String, nullable=False),
            Column("updated_at", String, nullable=False),
            PrimaryKeyConstraint("session_id", "record_id", name="pk_scraped_record"),
        )
        self._profile_table = Table(
            self.PROFILE_TABLE,
            self._metadata,
            Column("handle", String, primary_key=True),
            Column("name", String, nullable=True),
            Column("bio", Text, nullable=True),
            Column("followers_count", Integer, nullable=False, default=0),
            Column("following_count", Integer, nullable=False, default=0),
            Column("posts_count", Integer, nullable=False, default=0),
            Column("last_session_id", String, nullable=True),
            Column("created_at", String, nullable=False),
            Column("updated_at", String, nullable=False),
            Column("last_scraped_at", String, nullable=False),
        )
        self._execute_with_retry(
            "create_schema",
            lambda engine: self._metadata.create_all(engine, checkfirst=True),
        )

    @property
    def engine(self) -> Engine:
        return self._engine

    def _insert(self, table: Table):
        dialect = self._engine.dialect.name
        if dialect == "postgresql":
            return postgresql.insert(table)
        if dialect == "sqlite":
            return sqlite.insert(table)
        raise RuntimeError(f"Shared store does not support the '{dialect}' dialect")

    def _execute_with_retry(
        self,
        op_name: str,
        fn: Callable[[Engine], T],
        *,
        max_attempts: Optional[int] = None,
        base_delay_seconds: Optional[float] = None,
    ) -> T:
        max_attempts = max_attempts or self._max_attempts
        if base_delay_seconds is None:
            base_delay_seconds = self._base_delay_seconds
        last_exc: Optional[OperationalError] = None
        for attempt in range(1, max_attempts + 1):
            try:
                return fn(self._engine)
            except OperationalError as exc:
                if getattr(exc, "orig", None) is not None:
                    message = str(exc.orig).lower()
                else:
                    message = str(exc).lower()

                if not any(token in message for token in self._RETRYABLE_ERRORS):
                    raise

                last_exc = exc
                LOGGER.error(
                    "Retryable database error during %s (attempt %s/%s): %s",
                    op_name,
                    attempt,
                    max_attempts,
                    message or exc,
                )
                self._engine.dispose()

                if attempt == max_attempts:
                    break

                sleep_for = base_delay_seconds * (2 ** (attempt - 1))
                time.sleep(sleep_for)

        assert last_exc is not None
        LOGGER.error(
            "Exhausted retries for %s after %s attempts; giving up.",
            op_name,
            max_attempts,
        )
        raise TransientStoreError(f"{op_name} failed after {max_attempts} attempts") from last_exc

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------
    def new_session_id(self) -> str:
        return uuid.uuid4().hex

    def open_session(self, header: SessionHeader) -> SessionHeader:
        row = self._session_row(header)

        def _op(engine: Engine) -> bool:
            with engine.begin() as conn:
                result = conn.execute(
                    self._insert(self._session_table)
                    .values(row)
                    .on_conflict_do_nothing(index_elements=["session_id"])
                )
                return bool(result.rowcount)

        if not self._execute_with_retry("open_session", _op):
            raise SessionStateError(f"Session {header.session_id} already exists")
        LOGGER.info("Opened shared session %s", header.session_id)
        return header

    def commit_record(self, session: SessionHeader, record: Record) -> CommitOutcome:
        session_row = self._session_row(session)
        table = self._record_table
        now = utc_now_iso()

        def _op(engine: Engine) -> CommitStatus:
            with engine.begin() as conn:
                conn.execute(
                    self._insert(self._session_table)
                    .values(session_row)
                    .on_conflict_do_nothing(index_elements=["session_id"])
                )
                status = conn.execute(
                    select(self._session_table.c.status).where(
                        self._session_table.c.session_id == session.session_id
                    )
                ).scalar_one()
                if SessionStatus(status).is_terminal:
                    raise SessionStateError(f"session {session.session_id} is already {status}")

                existing = conn.execute(
                    select(table.c.record_id).where(
                        table.c.session_id == session.session_id,
                        table.c.record_id == record.record_id,
                    )
                ).first()
                position = conn.execute(
                    select(func.coalesce(func.max(table.c.position), 0)).where(
                        table.c.session_id == session.session_id
                    )
                ).scalar_one()

                stmt = self._insert(table).values(
                    session_id=session.session_id,
                    record_id=record.record_id,
                    position=position + 1,
                    author_handle=record.author_handle,
                    author_name=record.author_name,
                    content=record.content,
                    posted_at=record.posted_at,
                    metrics=dict(record.metrics),
                    source_url=record.source_url,
                    saved_at=record.saved_at,
                    created_at=now,
                    updated_at=now,
                )
                conn.execute(
                    stmt.on_conflict_do_update(
                        index_elements=[table.c.session_id, table.c.record_id],
                        set_={
                            "metrics": stmt.excluded.metrics,
                            "updated_at": stmt.excluded.updated_at,
                        },
                    )
                )
                count = conn.execute(
                    select(func.count()).select_from(table).where(
                        table.c.session_id == session.session_id
                    )
                ).scalar_one()
                conn.execute(
                    update(self._session_table)
                    .where(self._session_table.c.session_id == session.session_id)
                    .values(committed_count=count, updated_at=now)
                )
            return CommitStatus.REFRESHED if existing is not None else CommitStatus.INSERTED

        try:
            status = self._execute_with_retry("commit_record", _op)
        except TransientStoreError as exc:
            return CommitOutcome(record.record_id, CommitStatus.TRANSIENT, detail=str(exc))
        except SessionStateError as exc:
            return CommitOutcome(record.record_id, CommitStatus.FAILED, detail=str(exc))
        except SQLAlchemyError as exc:
            LOGGER.error("Shared commit of %s failed: %s", record.record_id, exc)
            return CommitOutcome(record.record_id, CommitStatus.FAILED, detail=str(exc))
        return CommitOutcome(record_id=record.record_id, status=status)

    def committed_count(self, session: SessionHeader) -> int:
        table = self._record_table

        def _op(engine: Engine) -> int:
            with engine.connect() as conn:
                return conn.execute(
                    select(func.count()).select_from(table).where(
                        table.c.session_id == session.session_id
                    )
                ).scalar_one()

        return int(self._execute_with_retry("committed_count", _op))

    def close_session(
        self,
        session: SessionHeader,
        status: SessionStatus,
        committed_count: int,
    ) -> SessionHeader:
        if not SessionStatus(status).is_terminal:
            raise SessionStateError(f"Cannot close session with non-terminal status {status!r}")
        session_row = self._session_row(session)
        sessions = self._session_table
        now = utc_now_iso()

        def _op(engine: Engine) -> Optional[dict]:
            with engine.begin() as conn:
                conn.execute(
                    self._insert(sessions)
                    .values(session_row)
                    .on_conflict_do_nothing(index_elements=["session_id"])
                )
                result = conn.execute(
                    update(sessions)
                    .where(
                        sessions.c.session_id == session.session_id,
                        sessions.c.status == SessionStatus.OPEN.value,
                    )
                    .values(
                        status=SessionStatus(status).value,
                        committed_count=committed_count,
                        encrypted=session.encrypted,
                        closed_at=now,
                        updated_at=now,
                    )
                )
                if not result.rowcount:
                    return None
                row = conn.execute(
                    select(sessions).where(sessions.c.session_id == session.session_id)
                ).first()
                return dict(row._mapping)

        row = self._execute_with_retry("close_session", _op)
        if row is None:
            raise SessionStateError(f"Session {session.session_id} is already closed")
        LOGGER.info(
            "Closed shared session %s as %s (%s record(s))",
            session.session_id,
            SessionStatus(status).value,
            committed_count,
        )
        return self._header_from_row(row)

    def save_profile(self, session: SessionHeader, profile: Profile) -> None:
        now = utc_now_iso()
        table = self._profile_table

        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                stmt = self._insert(table).values(
                    handle=profile.handle,
                    name=profile.name,
                    bio=profile.bio,
                    followers_count=profile.followers_count,
                    following_count=profile.following_count,
                    posts_count=profile.posts_count,
                    last_session_id=session.session_id,
                    created_at=now,
                    updated_at=now,
                    last_scraped_at=now,
                )
                update_cols = {
                    col: stmt.excluded[col]
                    for col in (
                        "name",
                        "bio",
                        "followers_count",
                        "following_count",
                        "posts_count",
                        "last_session_id",
                        "updated_at",
                        "last_scraped_at",
                    )
                }
                conn.execute(
                    stmt.on_conflict_do_update(
                        index_elements=[table.c.handle],
                        set_=update_cols,
                    )
                )

        self._execute_with_retry("save_profile", _op)
        LOGGER.debug("Upserted profile @%s from session %s", profile.handle, session.session_id)

    def load_profile(self, handle: str) -> Optional[Profile]:
        table = self._profile_table

        def _op(engine: Engine):
            with engine.connect() as conn:
                return conn.execute(select(table).where(table.c.handle == handle)).first()

        row = self._execute_with_retry("load_profile", _op)
        if row is None:
            return None
        return Profile(
            handle=row.handle,
            name=row.name,
            bio=row.bio,
            followers_count=row.followers_count,
            following_count=row.following_count,
            posts_count=row.posts_count,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def load_session(
        self, session_id: str, origin: Optional[SessionOrigin] = None
    ) -> Optional[SessionHeader]:
        sessions = self._session_table

        def _op(engine: Engine):
            with engine.connect() as conn:
                return conn.execute(
                    select(sessions).where(sessions.c.session_id == session_id)
                ).first()

        row = self._execute_with_retry("load_session", _op)
        if row is None:
            return None
        return self._header_from_row(dict(row._mapping))

    def fetch_committed(
        self, session_id: str, origin: Optional[SessionOrigin] = None
    ) -> List[Record]:
        table = self._record_table
        sessions = self._session_table

        def _op(engine: Engine):
            with engine.connect() as conn:
                known = conn.execute(
                    select(sessions.c.session_id).where(sessions.c.session_id == session_id)
                ).first()
                if known is None:
                    return None
                result = conn.execute(
                    select(table)
                    .where(table.c.session_id == session_id)
                    .order_by(table.c.position)
                )
                return [dict(row._mapping) for row in result]

        rows = self._execute_with_retry("fetch_committed", _op)
        if rows is None:
            raise SessionNotFoundError(f"No shared session {session_id}")
        return [
            Record(
                record_id=row["record_id"],
                author_handle=row["author_handle"],
                author_name=row["author_name"],
                content=row["content"],
                posted_at=row["posted_at"],
                metrics={str(k): int(v) for k, v in (row["metrics"] or {}).items()},
                source_url=row["source_url"],
                saved_at=row["saved_at"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    def list_sessions(self) -> List[SessionHeader]:
        sessions = self._session_table

        def _op(engine: Engine) -> List[dict]:
            with engine.connect() as conn:
                result = conn.execute(select(sessions).order_by(sessions.c.opened_at.desc()))
                return [dict(row._mapping) for row in result]

        return [self._header_from_row(row) for row in self._execute_with_retry("list_sessions", _op)]

    def delete_session(self, session_id: str, origin: Optional[SessionOrigin] = None) -> bool:
        def _op(engine: Engine) -> int:
            with engine.begin() as conn:
                conn.execute(
                    delete(self._record_table).where(self._record_table.c.session_id == session_id)
                )
                result = conn.execute(
                    delete(self._session_table).where(
                        self._session_table.c.session_id == session_id
                    )
                )
                return result.rowcount

        deleted = self._execute_with_retry("delete_session", _op)
        if deleted:
            LOGGER.info("Deleted shared session %s", session_id)
        return bool(deleted)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------
    @staticmethod
    def _session_row(header: SessionHeader) -> dict:
        now = utc_now_iso()
        return {
            "session_id": header.session_id,
            "kind": header.kind.value,
            "target": header.target,
            "origin": header.origin.value,
            "encrypted": header.encrypted,
            "status": header.status.value,
            "committed_count": header.committed_count,
            "opened_at": header.opened_at,
            "closed_at": header.closed_at,
            "created_at": now,
            "updated_at": now,
        }

    @staticmethod
    def _header_from_row(row: dict) -> SessionHeader:
        return SessionHeader(
            session_id=row["session_id"],
            kind=SessionKind(row["kind"]),
            target=row["target"],
            origin=SessionOrigin(row["origin"]),
            encrypted=bool(row["encrypted"]),
            status=SessionStatus(row["status"]),
            opened_at=row["opened_at"],
            closed_at=row["closed_at"],
            committed_count=int(row["committed_count"] or 0),
            updated_at=row["updated_at"],
        )
