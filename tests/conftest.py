"""Shared pytest configuration and fixtures for the test suite.

This module centralizes:
- Path setup (eliminates sys.path hacks in individual test files)
- Pytest markers for test categorization (unit, integration, property)
- Temporary directory and SQLite fixtures for the durable stores
- Raw record builders shared by pipeline and API tests
"""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from sqlalchemy import create_engine


# ==============================================================================
# Path Setup - Ensures scrapevault/ is importable
# ==============================================================================

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from scrapevault.data.models import (  # noqa: E402
    SessionHeader,
    SessionKind,
    SessionOrigin,
    SessionStatus,
    utc_now_iso,
)
from scrapevault.data.session_store import LocalSessionStore  # noqa: E402
from scrapevault.data.shared_store import SharedSessionStore  # noqa: E402
from scrapevault.data.staging_store import StagingStore  # noqa: E402


# ==============================================================================
# Pytest Configuration
# ==============================================================================

def pytest_configure(config):
    """Register custom markers for test categorization."""
    config.addinivalue_line(
        "markers",
        "unit: Fast tests with no I/O (mocked dependencies)",
    )
    config.addinivalue_line(
        "markers",
        "integration: Tests hitting SQLite or the file system",
    )
    config.addinivalue_line(
        "markers",
        "property: Hypothesis property-based tests",
    )


# ==============================================================================
# Store Fixtures
# ==============================================================================

@pytest.fixture
def local_store(tmp_path: Path) -> LocalSessionStore:
    """Local file backend with a fast lock poll for tests."""
    return LocalSessionStore(
        tmp_path / "sessions",
        lock_poll_interval_seconds=0.01,
        lock_lease_seconds=5.0,
    )


@pytest.fixture
def shared_engine(tmp_path: Path):
    """File-backed SQLite engine for the shared backend.

    A file (not ``:memory:``) keeps the data visible across pooled
    connections and survives ``engine.dispose()`` during retries.
    """
    engine = create_engine(f"sqlite:///{tmp_path / 'shared.db'}", future=True)
    yield engine
    engine.dispose()


@pytest.fixture
def shared_store(shared_engine) -> SharedSessionStore:
    return SharedSessionStore(shared_engine, base_delay_seconds=0.0)


@pytest.fixture
def staging(tmp_path: Path) -> StagingStore:
    store = StagingStore(tmp_path / "staging")
    store.initialize()
    return store


# ==============================================================================
# Helper Fixtures for Common Test Data
# ==============================================================================

def make_header(
    session_id: str,
    *,
    kind: SessionKind = SessionKind.SEARCH,
    target: Optional[str] = "python",
    origin: SessionOrigin = SessionOrigin.APP,
) -> SessionHeader:
    return SessionHeader(
        session_id=session_id,
        kind=kind,
        target=target,
        origin=origin,
        encrypted=False,
        status=SessionStatus.OPEN,
        opened_at=utc_now_iso(),
    )


def make_raw_record(
    record_id: str,
    *,
    likes: str = "1.5K",
    handle: str = "alice",
    content: Optional[str] = None,
) -> Dict[str, object]:
    """Raw producer payload shaped like a scraped post."""
    return {
        "source_url": f"https://x.com/{handle}/status/{record_id}?s=20",
        "author": {"handle": handle, "name": handle.title()},
        "content": content or f"post {record_id}",
        "posted_at": "2024-05-01T12:00:00+00:00",
        "metrics": {"likes": likes, "reposts": "12", "replies": ""},
    }


def make_raw_batch(record_ids: List[str], **kwargs) -> List[Dict[str, object]]:
    return [make_raw_record(record_id, **kwargs) for record_id in record_ids]


@pytest.fixture
def header_factory():
    """Build open SessionHeaders.

    Example:
        def test_commit(local_store, header_factory):
            header = local_store.open_session(header_factory("s1"))
    """
    return make_header


@pytest.fixture
def raw_record_factory():
    return make_raw_record
