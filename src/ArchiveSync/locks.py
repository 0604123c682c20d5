# === NAVMAP v1 ===
# {
#   "module": "ArchiveSync.locks",
#   "purpose": "Non-blocking exclusive/shared advisory locks guarding cache directories",
#   "sections": [
#     {"id": "lockmode", "name": "LockMode", "anchor": "class-lockmode", "kind": "class"},
#     {"id": "lockguard", "name": "LockGuard", "anchor": "class-lockguard", "kind": "class"},
#     {"id": "locked-region", "name": "locked_region", "anchor": "function-locked-region", "kind": "function"},
#     {"id": "lock-metrics-snapshot", "name": "lock_metrics_snapshot", "anchor": "function-lock-metrics-snapshot", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""File-based locking for the archive cache.

Responsibilities
----------------
- Provide :class:`LockGuard`, an explicit acquire-or-fail handle over a lock
  file, and :func:`locked_region`, the context manager used by the cache
  manager and strategies.
- Capture acquisition/busy counts and hold timing via
  :func:`lock_metrics_snapshot` to troubleshoot contention between deploys.

Design Notes
------------
- Locks are ``flock(2)`` advisory locks taken with ``LOCK_NB``. Acquisition
  never waits: a held lock raises :class:`ResourceBusyError` immediately.
- Exclusive locks exclude every other holder; shared locks exclude only
  exclusive holders.
- The kernel drops the lock when the holding process exits, so a killed
  deploy never leaves the cache wedged.
- A lock file may be unlinked by its holder on release. Acquisition checks
  that the locked descriptor is still the file at the path and retries when
  it is not, so a removed lock file never admits two exclusive holders.
"""

from __future__ import annotations

import contextlib
import enum
import fcntl
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Dict, Iterator, Optional, Union

from .errors import ResourceBusyError

__all__ = [
    "LockMode",
    "LockGuard",
    "locked_region",
    "lock_metrics_snapshot",
]

LOGGER = logging.getLogger(__name__)

_MAX_STALE_RETRIES = 5


class LockMode(enum.Enum):
    EXCLUSIVE = fcntl.LOCK_EX
    SHARED = fcntl.LOCK_SH


@dataclass
class _LockMetrics:
    acquire_total: int = 0
    busy_total: int = 0
    hold_ms_sum: float = 0.0


_metrics_guard = threading.RLock()
_metrics: Dict[str, _LockMetrics] = {}


def _record(mode: LockMode, *, busy: bool = False, hold_ms: float = 0.0) -> None:
    with _metrics_guard:
        metrics = _metrics.setdefault(mode.name.lower(), _LockMetrics())
        if busy:
            metrics.busy_total += 1
            return
        metrics.acquire_total += 1
        metrics.hold_ms_sum += hold_ms


class LockGuard:
    """Handle over one advisory lock file.

    ``acquire`` either takes the lock or raises :class:`ResourceBusyError`;
    ``release`` is idempotent and safe to call from ``finally`` blocks.
    """

    def __init__(
        self,
        path: Union[str, Path],
        mode: LockMode = LockMode.EXCLUSIVE,
        *,
        remove: bool = False,
    ) -> None:
        self.path = Path(path)
        self.mode = mode
        self.remove = remove
        self._handle: Optional[IO[bytes]] = None
        self._acquired_at = 0.0

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> "LockGuard":
        if self._handle is not None:
            return self
        for _ in range(_MAX_STALE_RETRIES):
            handle = self._open_locked()
            if self._is_current(handle):
                self._handle = handle
                self._acquired_at = time.monotonic()
                LOGGER.debug(
                    "lock-acquired mode=%s lock_file=%s", self.mode.name.lower(), self.path
                )
                return self
            # Locked a file a previous holder already unlinked; the path now
            # names a different file (or none), so lock that one instead.
            handle.close()
            LOGGER.debug("lock-stale lock_file=%s", self.path)
        _record(self.mode, busy=True)
        raise ResourceBusyError(
            str(self.path), f"Could not get {self.path} (lock file kept changing)"
        )

    def _open_locked(self) -> IO[bytes]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "ab")
        try:
            fcntl.flock(handle.fileno(), self.mode.value | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            _record(self.mode, busy=True)
            LOGGER.info("lock-busy mode=%s lock_file=%s", self.mode.name.lower(), self.path)
            raise ResourceBusyError(str(self.path)) from None
        except BaseException:
            handle.close()
            raise
        return handle

    def _is_current(self, handle: IO[bytes]) -> bool:
        try:
            on_disk = os.stat(self.path)
        except FileNotFoundError:
            return False
        opened = os.fstat(handle.fileno())
        return (opened.st_dev, opened.st_ino) == (on_disk.st_dev, on_disk.st_ino)

    def release(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        try:
            # Unlink while still locked so a waiter that opened this file
            # sees it is stale once it gets the lock.
            if self.remove:
                self._unlink()
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()
            hold_ms = max((time.monotonic() - self._acquired_at) * 1000.0, 0.0)
            _record(self.mode, hold_ms=hold_ms)
            LOGGER.debug(
                "lock-release mode=%s hold_ms=%.3f lock_file=%s",
                self.mode.name.lower(),
                hold_ms,
                self.path,
            )

    def _unlink(self) -> None:
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            LOGGER.debug("lock-file removal failed lock_file=%s error=%s", self.path, exc)

    def __enter__(self) -> "LockGuard":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


@contextlib.contextmanager
def locked_region(
    path: Union[str, Path],
    mode: LockMode = LockMode.EXCLUSIVE,
    *,
    remove: bool = False,
) -> Iterator[LockGuard]:
    """Hold ``path`` locked in ``mode`` for the duration of the block.

    Raises:
        ResourceBusyError: If the lock is already held incompatibly.
    """

    guard = LockGuard(path, mode, remove=remove)
    guard.acquire()
    try:
        yield guard
    finally:
        guard.release()


def lock_metrics_snapshot(*, reset: bool = False) -> Dict[str, Dict[str, float]]:
    """Return collected lock metrics keyed by mode, optionally clearing them."""

    with _metrics_guard:
        snapshot = {
            mode: {
                "acquire_total": metrics.acquire_total,
                "busy_total": metrics.busy_total,
                "hold_ms_sum": metrics.hold_ms_sum,
            }
            for mode, metrics in _metrics.items()
        }
        if reset:
            _metrics.clear()
        return snapshot
