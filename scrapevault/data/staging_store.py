"""Write-ahead staging area holding one whole-replace snapshot per open session."""
from __future__ import annotations

import json
import logging
import re
import threading
from pathlib import Path
from typing import List, Optional

from .models import StagingSnapshot

LOGGER = logging.getLogger(__name__)

_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
_SNAPSHOT_PREFIX = "staging_"


def validate_session_id(session_id: str) -> str:
    """Reject ids that could escape the storage directory."""

    value = str(session_id or "")
    if not _SESSION_ID_PATTERN.match(value) or value in {".", ".."}:
        raise ValueError(f"Invalid session id for filesystem storage: {session_id!r}")
    return value


class StagingStore:
    """Persist a session's raw producer output before any durable commit.

    Snapshots only need to survive a crash within one process run, so
    initialization clears whatever a previous run left behind unless
    ``clear_on_init`` is disabled (manual recovery tooling does that).
    """

    def __init__(self, staging_dir: Path, *, clear_on_init: bool = True) -> None:
        self._staging_dir = Path(staging_dir).expanduser()
        self._clear_on_init = clear_on_init
        self._initialized = False
        self._init_lock = threading.Lock()

    @property
    def staging_dir(self) -> Path:
        return self._staging_dir

    def initialize(self) -> None:
        with self._init_lock:
            if self._initialized:
                return
            self._staging_dir.mkdir(parents=True, exist_ok=True)
            if self._clear_on_init:
                leftovers = sorted(self._staging_dir.glob(f"{_SNAPSHOT_PREFIX}*"))
                LOGGER.info(
                    "Clearing %s staging file(s) left by a previous run in %s",
                    len(leftovers),
                    self._staging_dir,
                )
                for path in leftovers:
                    try:
                        path.unlink()
                    except FileNotFoundError:
                        continue
                    LOGGER.debug("Removed stale staging file %s", path.name)
            self._initialized = True

    def ensure_initialized(self) -> None:
        if not self._initialized:
            self.initialize()

    def write(self, session_id: str, snapshot: StagingSnapshot) -> Path:
        """Atomically replace the snapshot for ``session_id``."""

        self.ensure_initialized()
        path = self._path_for(session_id)
        if snapshot.session_id != session_id:
            raise ValueError(
                f"Snapshot belongs to session '{snapshot.session_id}', not '{session_id}'"
            )
        tmp_path = path.with_suffix(f"{path.suffix}.{threading.get_ident()}.tmp")
        tmp_path.write_text(
            json.dumps(snapshot.to_dict(), indent=2, default=str), encoding="utf-8"
        )
        tmp_path.replace(path)
        LOGGER.debug(
            "Staged %s raw record(s) for session %s at %s",
            len(snapshot.records),
            session_id,
            path,
        )
        return path

    def read(self, session_id: str) -> Optional[StagingSnapshot]:
        """Return the snapshot, or ``None`` when no usable snapshot exists."""

        self.ensure_initialized()
        path = self._path_for(session_id)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Unreadable staging snapshot %s: %s", path, exc)
            return None
        try:
            return StagingSnapshot.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            LOGGER.warning("Malformed staging snapshot %s: %s", path, exc)
            return None

    def delete(self, session_id: str) -> bool:
        self.ensure_initialized()
        path = self._path_for(session_id)
        try:
            path.unlink()
        except FileNotFoundError:
            LOGGER.debug("No staging snapshot to delete for session %s", session_id)
            return False
        LOGGER.debug("Deleted staging snapshot for session %s", session_id)
        return True

    def list_session_ids(self) -> List[str]:
        self.ensure_initialized()
        return sorted(
            path.stem[len(_SNAPSHOT_PREFIX):]
            for path in self._staging_dir.glob(f"{_SNAPSHOT_PREFIX}*.json")
        )

    def _path_for(self, session_id: str) -> Path:
        return self._staging_dir / f"{_SNAPSHOT_PREFIX}{validate_session_id(session_id)}.json"
