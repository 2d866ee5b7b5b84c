from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any

from aipilot.review.base import LockHeldError

logger = logging.getLogger(__name__)

DEFAULT_STALE_SECONDS = 300.0


def lock_path_for(project_root: Path, lock_dir: Path | None = None) -> Path:
    digest = hashlib.md5(str(project_root).encode("utf-8")).hexdigest()[:10]
    directory = lock_dir if lock_dir is not None else Path(tempfile.gettempdir())
    return directory / f"aipilot-review-{digest}.lock"


class ReviewLock:
    """Cross-process exclusive lock built on ``O_CREAT | O_EXCL``.

    A holder that has not released the lock within ``stale_seconds`` is
    presumed dead; its marker is removed under a reclaim guard and creation
    is retried exactly once. Acquisition never waits.
    """

    def __init__(self, path: Path, *, stale_seconds: float = DEFAULT_STALE_SECONDS) -> None:
        self.path = path
        self.stale_seconds = stale_seconds
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _create(self) -> None:
        fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        try:
            payload = {"pid": os.getpid(), "timestamp": time.time()}
            os.write(fd, json.dumps(payload).encode("utf-8"))
        finally:
            os.close(fd)

    def _read_holder(self) -> dict[str, Any] | None:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError):
            return None
        if not isinstance(payload, dict) or not isinstance(payload.get("timestamp"), (int, float)):
            return None
        return payload

    def _snapshot(self) -> tuple[int | str, float, tuple[Any, ...]] | None:
        """Return ``(pid, age, identity)`` of the current marker, or None if it is gone."""
        holder = self._read_holder()
        if holder == {}:
            return None
        if holder is None:
            # Unreadable marker: judge its age by mtime, it may still be mid-write.
            try:
                mtime = self.path.stat().st_mtime
            except FileNotFoundError:
                return None
            except OSError:
                return "unknown", float("inf"), ("unreadable",)
            return "unknown", max(0.0, time.time() - mtime), ("mtime", mtime)
        timestamp = float(holder["timestamp"])
        pid = holder.get("pid", "unknown")
        return pid, max(0.0, time.time() - timestamp), (pid, timestamp)

    @property
    def _guard_path(self) -> Path:
        return self.path.with_name(self.path.name + ".reclaim")

    def _reclaim(self, identity: tuple[Any, ...]) -> None:
        """Remove a stale marker while holding the reclaim guard.

        Only the contender that creates the guard may unlink, and only the
        marker it judged stale. A marker replaced in the meantime belongs to a
        live holder and is left alone.
        """
        guard = self._guard_path
        try:
            fd = os.open(guard, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as exc:
            try:
                guard_age = time.time() - guard.stat().st_mtime
            except FileNotFoundError:
                guard_age = 0.0
            if guard_age >= self.stale_seconds:
                # Left behind by a contender that died mid-reclaim.
                guard.unlink(missing_ok=True)
            raise LockHeldError("unknown", 0.0) from exc
        os.close(fd)
        try:
            current = self._snapshot()
            if current is None:
                return
            pid, age, current_identity = current
            if current_identity != identity or age < self.stale_seconds:
                raise LockHeldError(pid, age)
            logger.warning("Reclaiming stale review lock %s (pid: %s)", self.path, pid)
            self.path.unlink(missing_ok=True)
        finally:
            guard.unlink(missing_ok=True)

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._create()
            self._held = True
            return
        except FileExistsError:
            pass

        snapshot = self._snapshot()
        if snapshot is not None:
            pid, age, identity = snapshot
            if age < self.stale_seconds:
                raise LockHeldError(pid, age)
            self._reclaim(identity)
        try:
            self._create()
        except FileExistsError as exc:
            raise LockHeldError("unknown", 0.0) from exc
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> ReviewLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
