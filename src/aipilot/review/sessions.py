from __future__ import annotations

import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

SESSION_MARKER_PREFIX = ".codex-session-"
# Tokens end up on a command line, so reject anything that could read as an option.
TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]{0,127}$")


class SessionTokenStore:
    """Persists resumable reviewer session tokens per review key."""

    def __init__(self, session_dir: Path) -> None:
        self.session_dir = session_dir

    def path(self, key: str) -> Path:
        return self.session_dir / f"{SESSION_MARKER_PREFIX}{key}"

    def load(self, key: str) -> str | None:
        try:
            token = self.path(key).read_text(encoding="utf-8").strip()
        except OSError:
            return None
        if not TOKEN_PATTERN.match(token):
            logger.warning("Ignoring malformed session token for %s", key)
            return None
        return token

    def save(self, key: str, token: str) -> None:
        if not TOKEN_PATTERN.match(token):
            raise ValueError(f"Refusing to store malformed session token for {key}")
        self.path(key).write_text(token + "\n", encoding="utf-8")

    def discard(self, key: str) -> None:
        self.path(key).unlink(missing_ok=True)
