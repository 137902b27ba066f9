"""Exclusive lock guarding read-modify-write cycles on a session file."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from filelock import FileLock, Timeout

from ..errors import LockTimeoutError

LOGGER = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 0.1
DEFAULT_LEASE_SECONDS = 30.0


class SessionFileLock:
    """OS-level lock on ``<file>.lock`` with a bounded wait.

    The operating system drops the lock when the holding process exits, so a
    crashed writer never leaves the session file locked. A waiter gives up
    after ``timeout_seconds``, or after ``lease_seconds`` when no timeout is
    configured, and the caller treats that as a transient failure.
    """

    def __init__(
        self,
        target: Path,
        *,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be positive")
        self._path = Path(f"{target}.lock")
        self._poll_interval = poll_interval_seconds
        self._wait_seconds = timeout_seconds if timeout_seconds is not None else lease_seconds
        self._lock = FileLock(str(self._path))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._lock.is_locked

    def acquire(self) -> None:
        if self._lock.is_locked:
            raise RuntimeError(f"Lock {self._path} is already held by this instance")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire(timeout=self._wait_seconds, poll_interval=self._poll_interval)
        except Timeout as exc:
            raise LockTimeoutError(
                f"Timed out after {self._wait_seconds:.1f}s waiting for {self._path}"
            ) from exc
        LOGGER.debug("Acquired %s", self._path.name)

    def release(self) -> None:
        if self._lock.is_locked:
            self._lock.release()

    def discard(self) -> None:
        """Remove the lock file once the guarded file has been deleted.

        Must be called while the lock is held.
        """

        if not self._lock.is_locked:
            raise RuntimeError(f"Lock {self._path} must be held to discard it")
        try:
            self._path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            # Windows refuses to unlink an open file.
            LOGGER.debug("Could not remove %s: %s", self._path.name, exc)
            return
        LOGGER.debug("Removed %s", self._path.name)

    def __enter__(self) -> "SessionFileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
