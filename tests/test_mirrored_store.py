"""Tests for the local-first store that mirrors writes to the shared backend."""
from __future__ import annotations

import sqlite3
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from scrapevault.data.mirrored_store import MirroredSessionStore
from scrapevault.data.models import CommitOutcome, CommitStatus, MirrorStatus, SessionOrigin, SessionStatus
from scrapevault.data.shared_store import SharedSessionStore
from scrapevault.pipeline.orchestrator import build_record


@pytest.fixture
def mirrored(local_store, shared_store):
    return MirroredSessionStore(local_store, shared_store)


@pytest.fixture
def broken_mirror():
    mirror = MagicMock(spec=SharedSessionStore)
    error = OperationalError("insert", {}, sqlite3.OperationalError("unable to open database file"))
    mirror.open_session.side_effect = error
    mirror.commit_record.side_effect = error
    mirror.close_session.side_effect = error
    return mirror


@pytest.mark.integration
def test_successful_mirror_copies_every_write(mirrored, shared_store, header_factory, raw_record_factory):
    header = mirrored.open_session(header_factory("s1"))

    outcome = mirrored.commit_record(header, build_record(raw_record_factory("1")))
    mirrored.close_session(header, SessionStatus.COMPLETED, 1)

    assert outcome.status is CommitStatus.INSERTED
    assert outcome.mirror is MirrorStatus.MIRRORED
    assert [r.record_id for r in shared_store.fetch_committed("s1")] == ["1"]
    assert shared_store.load_session("s1").status is SessionStatus.COMPLETED


@pytest.mark.integration
def test_mirror_failure_keeps_local_commit(local_store, broken_mirror, header_factory, raw_record_factory):
    store = MirroredSessionStore(local_store, broken_mirror)
    header = store.open_session(header_factory("s1"))

    outcome = store.commit_record(header, build_record(raw_record_factory("1")))
    closed = store.close_session(header, SessionStatus.COMPLETED, 1)

    assert outcome.ok
    assert outcome.mirror is MirrorStatus.FAILED
    assert "unable to open database file" in outcome.detail
    assert store.committed_count(header) == 1
    assert closed.status is SessionStatus.COMPLETED
    assert [r.record_id for r in local_store.fetch_committed("s1", SessionOrigin.APP)] == ["1"]


@pytest.mark.integration
def test_non_ok_mirror_outcome_is_reported(local_store, header_factory, raw_record_factory):
    mirror = MagicMock(spec=SharedSessionStore)
    mirror.commit_record.return_value = CommitOutcome(
        record_id="1", status=CommitStatus.TRANSIENT, detail="database is locked"
    )
    store = MirroredSessionStore(local_store, mirror)
    header = store.open_session(header_factory("s1"))

    outcome = store.commit_record(header, build_record(raw_record_factory("1")))

    assert outcome.status is CommitStatus.INSERTED
    assert outcome.mirror is MirrorStatus.FAILED
    assert outcome.detail == "database is locked"


@pytest.mark.integration
def test_failed_local_commit_is_not_mirrored(local_store, header_factory, raw_record_factory):
    mirror = MagicMock(spec=SharedSessionStore)
    store = MirroredSessionStore(local_store, mirror)
    header = store.open_session(header_factory("s1"))
    store.close_session(header, SessionStatus.INCOMPLETE, 0)

    outcome = store.commit_record(header, build_record(raw_record_factory("1")))

    assert outcome.status is CommitStatus.FAILED
    mirror.commit_record.assert_not_called()


@pytest.mark.integration
def test_counts_come_from_the_local_primary(mirrored, shared_store, header_factory, raw_record_factory):
    header = mirrored.open_session(header_factory("s1"))
    mirrored.commit_record(header, build_record(raw_record_factory("1")))
    # Extra mirror-only row must not leak into the authoritative count.
    shared_store.commit_record(header, build_record(raw_record_factory("2")))

    assert shared_store.committed_count(header) == 2
    assert mirrored.committed_count(header) == 1
