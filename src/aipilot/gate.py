from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from aipilot.state.artifacts import ArtifactKind, ArtifactStore

logger = logging.getLogger(__name__)

DEFAULT_RECENT_WINDOW_SECONDS = 30.0
DEFAULT_MIN_SUMMARY_LENGTH = 10


class ReviewKind(StrEnum):
    PLAN = "plan"
    STEP = "step-review"
    FINAL = "final-review"
    IMPLEMENTATION = "impl-result"


FieldCheck = Callable[[dict[str, Any]], list[str]]


def _require_text(name: str) -> FieldCheck:
    def check(payload: dict[str, Any]) -> list[str]:
        value = payload.get(name)
        if not isinstance(value, str) or not value:
            return [f"Missing required field: {name}"]
        return []

    return check


def _require_present(name: str) -> FieldCheck:
    # Empty sections ({} or []) are still present; only null-ish scalars are missing.
    def check(payload: dict[str, Any]) -> list[str]:
        value = payload.get(name)
        if value is None or value == "" or (isinstance(value, (bool, int, float)) and not value):
            return [f"Missing required field: {name}"]
        return []

    return check


def _require_list(name: str) -> FieldCheck:
    def check(payload: dict[str, Any]) -> list[str]:
        if not isinstance(payload.get(name), list):
            return [f"Missing or invalid field: {name} (must be array)"]
        return []

    return check


def _require_number(name: str) -> FieldCheck:
    def check(payload: dict[str, Any]) -> list[str]:
        value = payload.get(name)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return [f"Missing or invalid field: {name} (must be number)"]
        return []

    return check


def _require_bool(name: str) -> FieldCheck:
    def check(payload: dict[str, Any]) -> list[str]:
        if not isinstance(payload.get(name), bool):
            return [f"Missing or invalid field: {name} (must be boolean)"]
        return []

    return check


def _clarification_questions(payload: dict[str, Any]) -> list[str]:
    if payload.get("status") != "needs_clarification":
        return []
    questions = payload.get("clarification_questions")
    if not isinstance(questions, list) or not questions:
        return ["Status is needs_clarification but clarification_questions is missing or empty"]
    return []


@dataclass(slots=True, frozen=True)
class ArtifactSchema:
    """Structural contract for one kind of reviewed artifact."""

    kind: ReviewKind
    artifact: ArtifactKind
    statuses: tuple[str, ...]
    checks: tuple[FieldCheck, ...]
    requires_summary: bool = True


SCHEMAS: dict[ReviewKind, ArtifactSchema] = {
    ReviewKind.PLAN: ArtifactSchema(
        kind=ReviewKind.PLAN,
        artifact=ArtifactKind.PLAN_REVIEW,
        statuses=("approved", "needs_changes", "needs_clarification", "rejected"),
        checks=(
            _require_text("summary"),
            _require_list("findings"),
            _require_present("requirements_coverage"),
            _clarification_questions,
        ),
    ),
    ReviewKind.STEP: ArtifactSchema(
        kind=ReviewKind.STEP,
        artifact=ArtifactKind.STEP_REVIEW,
        statuses=("approved", "needs_changes", "rejected"),
        checks=(
            _require_text("summary"),
            _require_number("step_id"),
            _require_present("step_adherence"),
            _require_list("findings"),
        ),
    ),
    ReviewKind.FINAL: ArtifactSchema(
        kind=ReviewKind.FINAL,
        artifact=ArtifactKind.CODE_REVIEW,
        statuses=("approved", "needs_changes", "rejected"),
        checks=(
            _require_text("summary"),
            _require_present("plan_adherence"),
            _require_list("findings"),
            _require_present("tests_review"),
            _require_present("checklist"),
        ),
    ),
    ReviewKind.IMPLEMENTATION: ArtifactSchema(
        kind=ReviewKind.IMPLEMENTATION,
        artifact=ArtifactKind.IMPL_RESULT,
        statuses=("complete", "partial", "failed"),
        checks=(_require_bool("has_ui_changes"),),
        requires_summary=False,
    ),
}


@dataclass(slots=True)
class ValidationResult:
    applicable: bool
    valid: bool
    errors: list[str] = field(default_factory=list)
    parsed: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}


@dataclass(slots=True, frozen=True)
class GateDecision:
    reason: str
    decision: str = "block"

    def to_dict(self) -> dict[str, str]:
        return {"decision": self.decision, "reason": self.reason}


def validate_payload(
    payload: Any,
    kind: ReviewKind,
    *,
    min_summary_length: int = DEFAULT_MIN_SUMMARY_LENGTH,
) -> list[str]:
    if not isinstance(payload, dict):
        return ["Output must be a JSON object"]
    schema = SCHEMAS[kind]
    errors: list[str] = []

    status = payload.get("status")
    if not status:
        errors.append("Missing required field: status")
    elif status not in schema.statuses:
        errors.append(f'Invalid status "{status}". Must be one of: {", ".join(schema.statuses)}')

    for check in schema.checks:
        errors.extend(check(payload))

    summary = payload.get("summary")
    if schema.requires_summary and isinstance(summary, str) and summary:
        if len(summary) < min_summary_length:
            errors.append(f"Summary is too short (minimum {min_summary_length} characters)")
    return errors


def validate_artifact(
    path: Path,
    kind: ReviewKind,
    *,
    min_summary_length: int = DEFAULT_MIN_SUMMARY_LENGTH,
) -> ValidationResult:
    """Validate one artifact file in five phases.

    1. absence means the producing agent did not run (not applicable);
    2. unparseable content fails immediately with the parser message;
    3-5. status, kind-specific fields and summary length accumulate errors.
    """
    if not path.is_file():
        return ValidationResult(
            applicable=False,
            valid=False,
            errors=[f"Output file not found: {path}"],
        )
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        return ValidationResult(
            applicable=True,
            valid=False,
            errors=[f"Output is not valid JSON: {exc}"],
        )

    errors = validate_payload(payload, kind, min_summary_length=min_summary_length)
    return ValidationResult(
        applicable=True,
        valid=not errors,
        errors=errors,
        parsed=payload if isinstance(payload, dict) else None,
    )


class ReviewGate:
    """Blocks pipeline advancement when a freshly written artifact is malformed."""

    def __init__(
        self,
        *,
        recent_window_seconds: float = DEFAULT_RECENT_WINDOW_SECONDS,
        min_summary_length: int = DEFAULT_MIN_SUMMARY_LENGTH,
    ) -> None:
        self.recent_window_seconds = recent_window_seconds
        self.min_summary_length = min_summary_length

    def _is_recent(
        self,
        store: ArtifactStore,
        kind: ArtifactKind,
        now: float,
        step: int | None = None,
    ) -> bool:
        modified = store.modified_at(kind, step)
        return modified is not None and now - modified < self.recent_window_seconds

    def _check(self, path: Path, kind: ReviewKind) -> GateDecision | None:
        result = validate_artifact(path, kind, min_summary_length=self.min_summary_length)
        if not result.applicable or result.valid:
            return None
        return GateDecision(reason=f"{path.name}: {'; '.join(result.errors)}")

    def pending_checks(self, store: ArtifactStore, now: float) -> list[tuple[Path, ReviewKind]]:
        checks: list[tuple[Path, ReviewKind]] = []
        if self._is_recent(store, ArtifactKind.PLAN_REVIEW, now):
            checks.append((store.path(ArtifactKind.PLAN_REVIEW), ReviewKind.PLAN))
        if self._is_recent(store, ArtifactKind.CODE_REVIEW, now):
            checks.append((store.path(ArtifactKind.CODE_REVIEW), ReviewKind.FINAL))
        for step in store.step_numbers(ArtifactKind.STEP_REVIEW):
            if self._is_recent(store, ArtifactKind.STEP_REVIEW, now, step):
                checks.append((store.path(ArtifactKind.STEP_REVIEW, step), ReviewKind.STEP))
        if self._is_recent(store, ArtifactKind.IMPL_RESULT, now):
            checks.append((store.path(ArtifactKind.IMPL_RESULT), ReviewKind.IMPLEMENTATION))
        return checks

    def check(self, session_dir: Path, now: float | None = None) -> GateDecision | None:
        store = ArtifactStore(session_dir)
        if not store.exists(ArtifactKind.PIPELINE_TASKS):
            logger.debug("Gate inactive: %s has no pipeline-tasks.json", session_dir)
            return None
        current = time.time() if now is None else now
        for path, kind in self.pending_checks(store, current):
            decision = self._check(path, kind)
            if decision is not None:
                logger.info("Gate blocked on %s", path.name)
                return decision
        return None
