"""Record producer contract plus a replaying producer for recovery and tooling."""
from __future__ import annotations

import importlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Protocol, Sequence

from ..data.models import SessionKind, StagingSnapshot

LOGGER = logging.getLogger(__name__)


class RecordProducer(Protocol):
    """Black-box source of raw records, streamed in batches.

    Each yielded batch holds only the new raw records. A producer may also
    expose ``fetch_profile(target)`` and ``is_ready()``; the pipeline checks
    for them with ``getattr``.
    """

    def batches(
        self, kind: SessionKind, target: Optional[str], desired_count: int
    ) -> Iterable[Sequence[Mapping[str, Any]]]:
        ...


class StaticRecordProducer:
    """Replay a fixed list of raw records in fixed-size batches."""

    def __init__(
        self,
        records: Sequence[Mapping[str, Any]],
        *,
        batch_size: int = 10,
        profile: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._records: List[Dict[str, Any]] = [dict(item) for item in records]
        self._batch_size = batch_size
        self._profile = dict(profile) if profile is not None else None

    @classmethod
    def from_json_lines(cls, path: Path, **kwargs: Any) -> "StaticRecordProducer":
        records: List[Dict[str, Any]] = []
        with Path(path).open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError as exc:
                    raise ValueError(f"{path}:{line_number}: invalid JSON ({exc})") from exc
                if not isinstance(payload, dict):
                    raise ValueError(f"{path}:{line_number}: expected a JSON object")
                records.append(payload)
        LOGGER.debug("Loaded %s raw record(s) from %s", len(records), path)
        return cls(records, **kwargs)

    @classmethod
    def from_snapshot(cls, snapshot: StagingSnapshot, **kwargs: Any) -> "StaticRecordProducer":
        return cls(snapshot.records, **kwargs)

    def is_ready(self) -> bool:
        return True

    def fetch_profile(self, target: Optional[str]) -> Optional[Dict[str, Any]]:
        return dict(self._profile) if self._profile is not None else None

    def batches(
        self, kind: SessionKind, target: Optional[str], desired_count: int
    ) -> Iterator[List[Dict[str, Any]]]:
        limit = min(desired_count, len(self._records)) if desired_count > 0 else len(self._records)
        for start in range(0, limit, self._batch_size):
            yield self._records[start:min(start + self._batch_size, limit)]


def load_producer(reference: str) -> RecordProducer:
    """Resolve ``package.module:attribute`` into a producer instance.

    A class or factory is called with no arguments; anything already exposing
    ``batches`` is used as is.
    """

    module_name, sep, attr = reference.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Producer reference must look like 'module:attribute'; got '{reference}'")
    target = getattr(importlib.import_module(module_name), attr)
    producer = target if hasattr(target, "batches") and not isinstance(target, type) else target()
    if not callable(getattr(producer, "batches", None)):
        raise TypeError(f"{reference} does not provide a batches() method")
    return producer
