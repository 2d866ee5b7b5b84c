from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from aipilot.errors import SessionResolutionError

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[a-f0-9]{6}$")
SESSION_DIR_PATTERN = re.compile(r"^\.task-([a-f0-9]{6})$")
SESSION_DIR_PREFIX = ".task-"
SESSION_TIMESTAMP_FILE = ".session-ts"


@dataclass(slots=True, frozen=True)
class SessionCandidate:
    path: Path
    timestamp: int

    @property
    def name(self) -> str:
        return self.path.name


def session_dir_name(session_id: str) -> str:
    return f"{SESSION_DIR_PREFIX}{session_id}"


def validate_session_dir(candidate: Path, project_root: Path) -> bool:
    """Return True when ``candidate`` is a real directory contained in ``project_root``.

    Symbolic links are rejected outright, and the fully resolved location must
    still sit inside the resolved project root so that crafted links higher in
    the path cannot move the session elsewhere.
    """
    try:
        if candidate.is_symlink() or not candidate.is_dir():
            return False
        resolved = candidate.resolve(strict=True)
        root = project_root.resolve(strict=True)
    except OSError:
        return False
    return resolved != root and resolved.is_relative_to(root)


def read_session_timestamp(session_dir: Path) -> int:
    marker = session_dir / SESSION_TIMESTAMP_FILE
    try:
        value = int(marker.read_text(encoding="utf-8").strip())
        if value > 0:
            return value
    except (OSError, ValueError):
        pass
    try:
        return int(session_dir.stat().st_mtime)
    except OSError:
        return 0


def list_session_candidates(project_root: Path) -> list[SessionCandidate]:
    try:
        entries = sorted(project_root.iterdir())
    except OSError:
        return []
    candidates: list[SessionCandidate] = []
    for entry in entries:
        if not SESSION_DIR_PATTERN.match(entry.name):
            continue
        if not validate_session_dir(entry, project_root):
            logger.debug("Skipping unsafe session directory candidate %s", entry)
            continue
        candidates.append(SessionCandidate(path=entry, timestamp=read_session_timestamp(entry)))
    return candidates


def resolve_session_dir(project_root: Path, session_id: str | None = None) -> Path | None:
    """Locate the current session directory under ``project_root``.

    An explicit ``session_id`` must be six lowercase hex characters; a
    malformed or unsafe selection raises ``SessionResolutionError`` rather than
    falling back to a scan. Without one, the candidate with the latest
    creation timestamp wins, ties going to the lexicographically greatest name.
    ``None`` means there is no active pipeline.
    """
    if session_id is not None:
        if not SESSION_ID_PATTERN.match(session_id):
            raise SessionResolutionError(f"Invalid session id: {session_id!r}")
        candidate = project_root / session_dir_name(session_id)
        if not candidate.exists() and not candidate.is_symlink():
            return None
        if not validate_session_dir(candidate, project_root):
            raise SessionResolutionError(
                f"Session directory {candidate.name} is not a directory, is a symlink, "
                "or resolves outside the project root."
            )
        return candidate

    candidates = list_session_candidates(project_root)
    if not candidates:
        return None
    selected = max(candidates, key=lambda item: (item.timestamp, item.name))
    if len(candidates) > 1:
        logger.warning(
            "Ambiguous session directories: %d candidates, selected %s",
            len(candidates),
            selected.name,
        )
    return selected.path
