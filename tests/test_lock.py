import json
import os
import time
from pathlib import Path

import pytest

from aipilot.review.base import LockHeldError
from aipilot.review.lock import ReviewLock, lock_path_for


def test_lock_path_is_stable_per_project(tmp_path: Path) -> None:
    first = lock_path_for(tmp_path / "one", tmp_path)
    again = lock_path_for(tmp_path / "one", tmp_path)
    other = lock_path_for(tmp_path / "two", tmp_path)

    assert first == again
    assert first != other
    assert first.name.startswith("aipilot-review-")
    assert first.suffix == ".lock"


def test_acquire_and_release(tmp_path: Path) -> None:
    path = tmp_path / "review.lock"
    lock = ReviewLock(path)

    with lock:
        assert lock.held
        holder = json.loads(path.read_text(encoding="utf-8"))
        assert holder["pid"] == os.getpid()

    assert not lock.held
    assert not path.exists()


def test_fresh_lock_blocks_second_holder(tmp_path: Path) -> None:
    path = tmp_path / "review.lock"
    path.write_text(json.dumps({"pid": 4242, "timestamp": time.time() - 10}), encoding="utf-8")

    with pytest.raises(LockHeldError) as excinfo:
        ReviewLock(path, stale_seconds=300).acquire()

    assert excinfo.value.pid == 4242
    assert 9 <= excinfo.value.age_seconds < 60
    assert path.exists()


def test_stale_lock_is_reclaimed(tmp_path: Path) -> None:
    path = tmp_path / "review.lock"
    path.write_text(json.dumps({"pid": 4242, "timestamp": time.time() - 301}), encoding="utf-8")
    lock = ReviewLock(path, stale_seconds=300)

    lock.acquire()

    assert lock.held
    assert json.loads(path.read_text(encoding="utf-8"))["pid"] == os.getpid()
    lock.release()


def test_corrupt_lock_age_comes_from_mtime(tmp_path: Path) -> None:
    path = tmp_path / "review.lock"
    path.write_text("", encoding="utf-8")

    with pytest.raises(LockHeldError):
        ReviewLock(path, stale_seconds=300).acquire()

    old = time.time() - 600
    os.utime(path, (old, old))
    lock = ReviewLock(path, stale_seconds=300)
    lock.acquire()
    assert lock.held
    lock.release()


def test_release_without_acquire_leaves_foreign_lock(tmp_path: Path) -> None:
    path = tmp_path / "review.lock"
    path.write_text(json.dumps({"pid": 1, "timestamp": time.time()}), encoding="utf-8")

    ReviewLock(path).release()

    assert path.exists()


def test_concurrent_reclaim_does_not_remove_a_fresh_lock(tmp_path: Path) -> None:
    path = tmp_path / "review.lock"
    path.write_text(json.dumps({"pid": 4242, "timestamp": time.time() - 301}), encoding="utf-8")
    first = ReviewLock(path, stale_seconds=300)
    second = ReviewLock(path, stale_seconds=300)
    original_snapshot = second._snapshot
    calls = []

    def snapshot_then_interleave():
        result = original_snapshot()
        if not calls:
            # The other contender reclaims and takes the lock after this read.
            first.acquire()
        calls.append(result)
        return result

    second._snapshot = snapshot_then_interleave

    with pytest.raises(LockHeldError):
        second.acquire()

    assert first.held
    assert not second.held
    assert json.loads(path.read_text(encoding="utf-8"))["pid"] == os.getpid()
    assert not path.with_name(path.name + ".reclaim").exists()
    first.release()


def test_busy_reclaim_guard_blocks_without_touching_marker(tmp_path: Path) -> None:
    path = tmp_path / "review.lock"
    path.write_text(json.dumps({"pid": 4242, "timestamp": time.time() - 301}), encoding="utf-8")
    guard = path.with_name(path.name + ".reclaim")
    guard.write_text("", encoding="utf-8")

    with pytest.raises(LockHeldError):
        ReviewLock(path, stale_seconds=300).acquire()

    assert json.loads(path.read_text(encoding="utf-8"))["pid"] == 4242
    assert guard.exists()
