from aipilot.state.artifacts import ArtifactKind, ArtifactStore
from aipilot.state.session import resolve_session_dir, validate_session_dir

__all__ = ["ArtifactKind", "ArtifactStore", "resolve_session_dir", "validate_session_dir"]
