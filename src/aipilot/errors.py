from __future__ import annotations


class AipilotError(RuntimeError):
    """Base class for pipeline errors."""


class SessionResolutionError(AipilotError):
    """Raised when a session directory selector is malformed or unsafe."""
