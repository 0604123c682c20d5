"""Advisory lock tests.

``flock`` locks belong to open file descriptions, so two guards opened in the
same process contend exactly like two deploy processes would.
"""

from __future__ import annotations

import fcntl
import subprocess
import sys
import textwrap
from pathlib import Path

import pytest

from ArchiveSync.errors import ResourceBusyError
from ArchiveSync.locks import LockGuard, LockMode, lock_metrics_snapshot, locked_region


def test_exclusive_blocks_second_exclusive(tmp_path: Path) -> None:
    lock = tmp_path / "cache.production.lock"
    with locked_region(lock, LockMode.EXCLUSIVE):
        with pytest.raises(ResourceBusyError) as excinfo:
            with locked_region(lock, LockMode.EXCLUSIVE):
                pytest.fail("second exclusive holder must not run")
        assert excinfo.value.path == str(lock)
        assert str(lock) in str(excinfo.value)


def test_exclusive_blocks_shared_and_shared_blocks_exclusive(tmp_path: Path) -> None:
    lock = tmp_path / "release.lock"
    with locked_region(lock, LockMode.EXCLUSIVE):
        with pytest.raises(ResourceBusyError):
            LockGuard(lock, LockMode.SHARED).acquire()

    with locked_region(lock, LockMode.SHARED):
        with pytest.raises(ResourceBusyError):
            LockGuard(lock, LockMode.EXCLUSIVE).acquire()


def test_shared_holders_coexist(tmp_path: Path) -> None:
    lock = tmp_path / "release.lock"
    with locked_region(lock, LockMode.SHARED) as first:
        with locked_region(lock, LockMode.SHARED) as second:
            assert first.held and second.held


def test_lock_released_when_action_raises(tmp_path: Path) -> None:
    lock = tmp_path / "stage.lock"
    with pytest.raises(RuntimeError):
        with locked_region(lock, LockMode.EXCLUSIVE):
            raise RuntimeError("boom")
    with locked_region(lock, LockMode.EXCLUSIVE) as guard:
        assert guard.held


def test_guard_creates_parents_and_optionally_removes_file(tmp_path: Path) -> None:
    lock = tmp_path / "nested" / "dir" / "stage.lock"
    with locked_region(lock, remove=True):
        assert lock.exists()
    assert not lock.exists()

    kept = tmp_path / "kept.lock"
    with locked_region(kept):
        pass
    assert kept.exists()


def test_release_is_idempotent(tmp_path: Path) -> None:
    guard = LockGuard(tmp_path / "x.lock").acquire()
    guard.release()
    guard.release()
    assert not guard.held


def test_busy_in_other_process_fails_without_waiting(tmp_path: Path) -> None:
    lock = tmp_path / "held.lock"
    holder = textwrap.dedent(
        f"""
        import fcntl, sys, time
        handle = open({str(lock)!r}, "ab")
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        print("locked", flush=True)
        sys.stdin.readline()
        """
    )
    proc = subprocess.Popen(
        [sys.executable, "-c", holder],
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        text=True,
    )
    try:
        assert proc.stdout is not None and proc.stdout.readline().strip() == "locked"
        with pytest.raises(ResourceBusyError):
            with locked_region(lock, LockMode.EXCLUSIVE):
                pytest.fail("lock held by another process")
    finally:
        assert proc.stdin is not None
        proc.stdin.write("\n")
        proc.stdin.flush()
        proc.wait(timeout=10)

    with locked_region(lock, LockMode.EXCLUSIVE) as guard:
        assert guard.held


def test_metrics_track_acquires_and_busy(tmp_path: Path) -> None:
    lock_metrics_snapshot(reset=True)
    lock = tmp_path / "m.lock"
    with locked_region(lock, LockMode.EXCLUSIVE):
        with pytest.raises(ResourceBusyError):
            LockGuard(lock, LockMode.EXCLUSIVE).acquire()
    snapshot = lock_metrics_snapshot(reset=True)
    assert snapshot["exclusive"]["acquire_total"] == 1
    assert snapshot["exclusive"]["busy_total"] == 1


def test_lock_won_on_unlinked_file_is_retried(tmp_path: Path, monkeypatch) -> None:
    lock = tmp_path / "cache.production.lock"
    first = LockGuard(lock, LockMode.EXCLUSIVE, remove=True).acquire()
    # Another deploy opened the lock file before the holder released and removed it.
    stale = open(lock, "ab")
    first.release()
    fcntl.flock(stale.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)

    racer = LockGuard(lock, LockMode.EXCLUSIVE)
    pending = iter([stale])
    open_locked = racer._open_locked
    monkeypatch.setattr(racer, "_open_locked", lambda: next(pending, None) or open_locked())

    racer.acquire()
    try:
        assert stale.closed
        assert racer.held
        with pytest.raises(ResourceBusyError):
            LockGuard(lock, LockMode.EXCLUSIVE).acquire()
    finally:
        racer.release()


def test_removed_lock_file_is_unlinked_before_unlock(tmp_path: Path, monkeypatch) -> None:
    lock = tmp_path / "cache.production.lock"
    guard = LockGuard(lock, LockMode.EXCLUSIVE, remove=True).acquire()
    exists_at_unlock = []
    real_flock = fcntl.flock

    def spy(fd, operation):
        if operation == fcntl.LOCK_UN:
            exists_at_unlock.append(lock.exists())
        return real_flock(fd, operation)

    monkeypatch.setattr(fcntl, "flock", spy)
    guard.release()

    assert exists_at_unlock == [False]
    assert not lock.exists()
