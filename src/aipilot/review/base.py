from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from aipilot.errors import AipilotError
from aipilot.gate import ReviewKind
from aipilot.state.artifacts import ArtifactKind


class ReviewerExecutionError(AipilotError):
    """Raised when a reviewer process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stderr: str = "",
        retriable: bool = False,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr
        self.retriable = retriable


class ReviewerTimeoutError(ReviewerExecutionError):
    """Raised when the reviewer exceeds its wall-clock budget."""


class ReviewerProcessError(ReviewerExecutionError):
    """Raised when the reviewer crashes, exits non-zero or cannot be started."""


class SessionExpiredError(ReviewerProcessError):
    """Raised when a resumed reviewer session is no longer available."""


class ReviewInputError(AipilotError):
    """Raised when an artifact required for the requested review is missing."""


class LockHeldError(AipilotError):
    """Raised when another reviewer invocation holds the project lock."""

    def __init__(self, pid: int | str, age_seconds: float) -> None:
        super().__init__(
            f"Another review process is running (pid: {pid}, age: {round(age_seconds)}s)."
        )
        self.pid = pid
        self.age_seconds = age_seconds


class InvocationState(StrEnum):
    IDLE = "idle"
    LOCKING = "locking"
    BUILDING_PROMPT = "building_prompt"
    RUNNING = "running"
    VALIDATING = "validating"
    COMPLETE = "complete"
    SKIPPED = "skipped"
    BLOCKED_INPUT = "blocked_input"
    BLOCKED_VALIDATION = "blocked_validation"
    BLOCKED_LOCK = "blocked_lock"
    FAILED_TIMEOUT = "failed_timeout"
    FAILED_PROCESS = "failed_process"

    @property
    def exit_code(self) -> int:
        return TERMINAL_EXIT_CODES[self]


TERMINAL_EXIT_CODES: dict[InvocationState, int] = {
    InvocationState.COMPLETE: 0,
    InvocationState.SKIPPED: 0,
    InvocationState.BLOCKED_INPUT: 1,
    InvocationState.BLOCKED_VALIDATION: 1,
    InvocationState.FAILED_PROCESS: 2,
    InvocationState.FAILED_TIMEOUT: 3,
    InvocationState.BLOCKED_LOCK: 4,
}

TRANSITIONS: dict[InvocationState, frozenset[InvocationState]] = {
    InvocationState.IDLE: frozenset({InvocationState.LOCKING}),
    InvocationState.LOCKING: frozenset(
        {InvocationState.BUILDING_PROMPT, InvocationState.BLOCKED_LOCK}
    ),
    InvocationState.BUILDING_PROMPT: frozenset(
        {
            InvocationState.RUNNING,
            InvocationState.SKIPPED,
            InvocationState.BLOCKED_INPUT,
            InvocationState.FAILED_PROCESS,
        }
    ),
    InvocationState.RUNNING: frozenset(
        {
            InvocationState.VALIDATING,
            InvocationState.FAILED_TIMEOUT,
            InvocationState.FAILED_PROCESS,
        }
    ),
    InvocationState.VALIDATING: frozenset(
        {InvocationState.COMPLETE, InvocationState.BLOCKED_VALIDATION}
    ),
}


@dataclass(slots=True, frozen=True)
class ReviewRequest:
    kind: ReviewKind
    project_root: Path
    session_dir: Path
    step: int | None = None

    def __post_init__(self) -> None:
        if self.kind is ReviewKind.IMPLEMENTATION:
            raise ValueError("Implementation results are not produced by the reviewer")
        if self.kind is ReviewKind.STEP and (self.step is None or self.step < 1):
            raise ValueError("Step reviews need a positive step number")

    @property
    def artifact(self) -> ArtifactKind:
        return {
            ReviewKind.PLAN: ArtifactKind.PLAN_REVIEW,
            ReviewKind.STEP: ArtifactKind.STEP_REVIEW,
            ReviewKind.FINAL: ArtifactKind.CODE_REVIEW,
        }[self.kind]

    @property
    def output_path(self) -> Path:
        step = self.step if self.kind is ReviewKind.STEP else None
        return self.session_dir / self.artifact.filename(step)

    @property
    def session_key(self) -> str:
        if self.kind is ReviewKind.STEP:
            return f"step-{self.step}"
        if self.kind is ReviewKind.PLAN:
            return "plan"
        return "final"


@dataclass(slots=True)
class InvocationResult:
    state: InvocationState
    output_path: Path | None = None
    status: str | None = None
    errors: list[str] | None = None
    message: str = ""

    @property
    def exit_code(self) -> int:
        return self.state.exit_code
