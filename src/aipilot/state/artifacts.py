from __future__ import annotations

import json
import os
import re
import tempfile
from enum import StrEnum
from pathlib import Path
from typing import Any


class ArtifactKind(StrEnum):
    PLAN_MD = "plan.md"
    PLAN_JSON = "plan.json"
    PLAN_REVIEW = "plan-review.json"
    STEP_RESULT = "step-{step}-result.json"
    STEP_REVIEW = "step-{step}-review.json"
    IMPL_RESULT = "impl-result.json"
    CODE_REVIEW = "code-review.json"
    UI_REVIEW = "ui-review.json"
    PIPELINE_TASKS = "pipeline-tasks.json"
    REVIEWER_LOG = "codex_stderr.log"

    @property
    def per_step(self) -> bool:
        return "{step}" in self.value

    def filename(self, step: int | None = None) -> str:
        if self.per_step:
            if step is None or step < 1:
                raise ValueError(f"{self.name} artifacts need a positive step number")
            return self.value.format(step=step)
        return self.value


_STEP_PATTERNS = {
    ArtifactKind.STEP_RESULT: re.compile(r"^step-(\d+)-result\.json$"),
    ArtifactKind.STEP_REVIEW: re.compile(r"^step-(\d+)-review\.json$"),
}


def read_json_safe(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write ``payload`` so readers never observe a half-written file."""
    serialized = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(serialized)
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except OSError:
            pass
        raise


class ArtifactStore:
    """Typed access to the files of one session directory."""

    def __init__(self, session_dir: Path) -> None:
        self.session_dir = session_dir

    def path(self, kind: ArtifactKind, step: int | None = None) -> Path:
        return self.session_dir / kind.filename(step)

    def exists(self, kind: ArtifactKind, step: int | None = None) -> bool:
        return self.path(kind, step).is_file()

    def read_json(self, kind: ArtifactKind, step: int | None = None) -> dict[str, Any] | None:
        payload = read_json_safe(self.path(kind, step))
        return payload if isinstance(payload, dict) else None

    def write_json(self, kind: ArtifactKind, payload: Any, step: int | None = None) -> Path:
        target = self.path(kind, step)
        write_json_atomic(target, payload)
        return target

    def step_numbers(self, kind: ArtifactKind) -> list[int]:
        pattern = _STEP_PATTERNS.get(kind)
        if pattern is None:
            raise ValueError(f"{kind.name} is not a per-step artifact")
        try:
            names = [entry.name for entry in self.session_dir.iterdir()]
        except OSError:
            return []
        numbers = {int(match.group(1)) for name in names if (match := pattern.match(name))}
        return sorted(number for number in numbers if number > 0)

    def modified_at(self, kind: ArtifactKind, step: int | None = None) -> float | None:
        try:
            return self.path(kind, step).stat().st_mtime
        except OSError:
            return None
