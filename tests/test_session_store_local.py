"""Tests for the local-file durable store (dedup, locking, quarantine, round trip)."""
from __future__ import annotations

import json
import re
import threading
import time

import pytest

from scrapevault.data.models import CommitStatus, SessionOrigin, SessionStatus
from scrapevault.data.session_lock import SessionFileLock
from scrapevault.data.session_store import LocalSessionStore
from scrapevault.errors import SessionNotFoundError, SessionStateError
from scrapevault.pipeline.orchestrator import build_record


@pytest.fixture
def open_header(local_store, header_factory):
    return local_store.open_session(header_factory("s1"))


def _record(raw_record_factory, record_id, **kwargs):
    return build_record(raw_record_factory(record_id, **kwargs))


@pytest.mark.integration
class TestCommit:
    def test_idempotent_commit_refreshes_metrics(self, local_store, open_header, raw_record_factory):
        first = local_store.commit_record(open_header, _record(raw_record_factory, "100", likes="1.5K"))
        second = local_store.commit_record(open_header, _record(raw_record_factory, "100", likes="2K"))

        assert first.status is CommitStatus.INSERTED
        assert second.status is CommitStatus.REFRESHED
        assert local_store.committed_count(open_header) == 1
        stored = local_store.fetch_committed("s1", SessionOrigin.APP)
        assert stored[0].metrics["likes"] == 2000
        assert stored[0].updated_at is not None

    def test_dedup_across_batches(self, local_store, open_header, raw_record_factory):
        first_batch = [str(i) for i in range(1, 6)]
        # 10 records, 3 of which repeat ids from the first batch.
        second_batch = ["1", "3", "5"] + [str(i) for i in range(6, 13)]
        assert len(second_batch) == 10

        for record_id in first_batch:
            local_store.commit_record(open_header, _record(raw_record_factory, record_id))
        inserted = [
            local_store.commit_record(open_header, _record(raw_record_factory, record_id)).status
            for record_id in second_batch
        ]

        assert inserted.count(CommitStatus.INSERTED) == 7
        assert inserted.count(CommitStatus.REFRESHED) == 3
        assert local_store.committed_count(open_header) == 12

    def test_commit_order_is_preserved_on_refresh(self, local_store, open_header, raw_record_factory):
        for record_id in ["a", "b", "c"]:
            local_store.commit_record(open_header, _record(raw_record_factory, record_id))
        local_store.commit_record(open_header, _record(raw_record_factory, "a", likes="9"))

        ids = [r.record_id for r in local_store.fetch_committed("s1", SessionOrigin.APP)]
        assert ids == ["a", "b", "c"]

    def test_concurrent_commits_do_not_lose_updates(
        self, local_store, open_header, raw_record_factory, monkeypatch
    ):
        """Second writer must see the first writer's record inside the critical section."""
        observed = []
        original_merge = LocalSessionStore._merge_record

        def slow_merge(document, record):
            observed.append(len(document["records"]))
            time.sleep(0.2)
            return original_merge(document, record)

        monkeypatch.setattr(LocalSessionStore, "_merge_record", staticmethod(slow_merge))

        outcomes = []
        threads = [
            threading.Thread(
                target=lambda rid=rid: outcomes.append(
                    local_store.commit_record(open_header, _record(raw_record_factory, rid))
                )
            )
            for rid in ("x1", "x2")
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert sorted(observed) == [0, 1]
        assert all(outcome.status is CommitStatus.INSERTED for outcome in outcomes)
        assert local_store.committed_count(open_header) == 2

    def test_lock_timeout_is_reported_as_transient(self, tmp_path, header_factory, raw_record_factory):
        store = LocalSessionStore(
            tmp_path, lock_poll_interval_seconds=0.01, lock_timeout_seconds=0.05
        )
        header = store.open_session(header_factory("s1"))
        holder = SessionFileLock(store.session_path("s1", SessionOrigin.APP), poll_interval_seconds=0.01)
        holder.acquire()
        try:
            outcome = store.commit_record(header, _record(raw_record_factory, "1"))
        finally:
            holder.release()

        assert outcome.status is CommitStatus.TRANSIENT
        assert not outcome.ok
        assert store.committed_count(header) == 0

    def test_commit_after_close_fails(self, local_store, open_header, raw_record_factory):
        local_store.close_session(open_header, SessionStatus.INCOMPLETE, 0)
        outcome = local_store.commit_record(open_header, _record(raw_record_factory, "1"))
        assert outcome.status is CommitStatus.FAILED


@pytest.mark.integration
class TestSessionFiles:
    def test_round_trip_through_a_fresh_store(self, local_store, open_header, raw_record_factory):
        for record_id in ["10", "11", "12"]:
            local_store.commit_record(open_header, _record(raw_record_factory, record_id))
        before = [r.record_id for r in local_store.fetch_committed("s1", SessionOrigin.APP)]

        reloaded = LocalSessionStore(local_store.data_dir)
        after = [r.record_id for r in reloaded.fetch_committed("s1", SessionOrigin.APP)]

        assert after == before == ["10", "11", "12"]

    def test_origins_use_disjoint_files(self, local_store, header_factory):
        local_store.open_session(header_factory("same"))
        local_store.open_session(header_factory("same", origin=SessionOrigin.API))

        names = sorted(p.name for p in local_store.data_dir.glob("*.json"))
        assert names == ["session_same.json", "sessionapi_same.json"]

    def test_open_twice_is_rejected(self, local_store, open_header):
        with pytest.raises(SessionStateError):
            local_store.open_session(open_header)

    def test_corrupt_file_is_quarantined_on_commit(self, local_store, open_header, raw_record_factory):
        local_store.commit_record(open_header, _record(raw_record_factory, "1"))
        path = local_store.session_path("s1", SessionOrigin.APP)
        path.write_text("{truncated", encoding="utf-8")

        assert local_store.committed_count(open_header) == 0
        outcome = local_store.commit_record(open_header, _record(raw_record_factory, "2"))

        assert outcome.status is CommitStatus.INSERTED
        quarantined = list(local_store.data_dir.glob("session_s1.json.corrupt-*"))
        assert len(quarantined) == 1
        assert quarantined[0].read_text() == "{truncated"
        assert local_store.committed_count(open_header) == 1

    def test_close_assigns_terminal_status_once(self, local_store, open_header, raw_record_factory):
        local_store.commit_record(open_header, _record(raw_record_factory, "1"))

        closed = local_store.close_session(open_header, SessionStatus.COMPLETED, 1)

        assert closed.status is SessionStatus.COMPLETED
        assert closed.closed_at is not None
        with pytest.raises(SessionStateError):
            local_store.close_session(open_header, SessionStatus.FAILED, 1)
        on_disk = json.loads(local_store.session_path("s1", SessionOrigin.APP).read_text())
        assert on_disk["status"] == "completed"
        assert on_disk["committed_count"] == 1

    def test_close_requires_terminal_status(self, local_store, open_header):
        with pytest.raises(SessionStateError):
            local_store.close_session(open_header, SessionStatus.OPEN, 0)

    def test_list_and_delete(self, local_store, header_factory):
        local_store.open_session(header_factory("a"))
        local_store.open_session(header_factory("b", origin=SessionOrigin.API))

        listed = {(h.session_id, h.origin) for h in local_store.list_sessions()}
        assert listed == {("a", SessionOrigin.APP), ("b", SessionOrigin.API)}

        assert local_store.delete_session("b", SessionOrigin.API) is True
        assert not local_store.data_dir.joinpath("sessionapi_b.json.lock").exists()
        assert local_store.delete_session("b", SessionOrigin.API) is False
        assert local_store.load_session("b", SessionOrigin.API) is None

    def test_fetch_unknown_session_raises(self, local_store):
        with pytest.raises(SessionNotFoundError):
            local_store.fetch_committed("missing", SessionOrigin.APP)


@pytest.mark.unit
def test_new_session_id_format(local_store):
    session_id = local_store.new_session_id()
    assert re.fullmatch(r"local_\d{13}_[a-z0-9]{9}", session_id)
    assert session_id != local_store.new_session_id()
