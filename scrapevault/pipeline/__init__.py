"""Scrape session pipeline (lifecycle + orchestration over a durable store)."""

from __future__ import annotations

from .lifecycle import SessionHandle, SessionLifecycle, derive_terminal_status
from .orchestrator import (
    ScrapePipeline,
    SessionResult,
    build_pipeline,
    build_profile,
    build_record,
    derive_record_id,
)
from .producer import RecordProducer, StaticRecordProducer, load_producer

__all__ = [
    "RecordProducer",
    "ScrapePipeline",
    "SessionHandle",
    "SessionLifecycle",
    "SessionResult",
    "StaticRecordProducer",
    "build_pipeline",
    "build_profile",
    "build_record",
    "derive_record_id",
    "derive_terminal_status",
    "load_producer",
]
