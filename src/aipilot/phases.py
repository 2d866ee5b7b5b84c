"""Artifact-based pipeline phase detection.

The current phase is never stored. It is recomputed from the files present in
the session directory, checking later pipeline stages first so that the most
advanced artifact always decides.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from aipilot.state.artifacts import ArtifactKind, ArtifactStore
from aipilot.state.session import resolve_session_dir


class Phase(StrEnum):
    ANALYZING = "analyzing"
    ANALYZING_PARTIAL_PLAN = "analyzing_partial_plan"
    PLAN_REVIEW_PENDING = "plan_review_pending"
    PLAN_REVIEW = "plan_review"
    PLAN_REVISION = "plan_revision"
    CLARIFICATION = "clarification"
    USER_APPROVAL = "user_approval"
    PLAN_REJECTED = "plan_rejected"
    IMPLEMENTING_STEP = "implementing_step"
    REVIEWING_STEP = "reviewing_step"
    IMPLEMENTATION_COMPLETE = "implementation_complete"
    FINAL_REVIEW = "final_review"
    UI_VERIFICATION = "ui_verification"


@dataclass(slots=True, frozen=True)
class PhaseReport:
    phase: Phase
    label: str
    detail: str
    step: int | None = None
    questions: tuple[str, ...] = field(default_factory=tuple)


def _count_severity(findings: Any, severity: str) -> int:
    if not isinstance(findings, list):
        return 0
    return sum(
        1 for item in findings if isinstance(item, dict) and item.get("severity") == severity
    )


def _step_count(result: dict[str, Any]) -> str:
    steps = result.get("steps_completed")
    if isinstance(steps, list):
        return str(len(steps))
    total = result.get("total_steps")
    return str(total) if total else "?"


def _questions(review: dict[str, Any]) -> tuple[str, ...]:
    raw = review.get("clarification_questions")
    if not isinstance(raw, list):
        return ()
    questions: list[str] = []
    for item in raw:
        if isinstance(item, str) and item.strip():
            questions.append(item.strip())
        elif isinstance(item, dict):
            text = item.get("question") or item.get("text")
            if isinstance(text, str) and text.strip():
                questions.append(text.strip())
    return tuple(questions)


def _infer_step_phase(store: ArtifactStore, results: list[int], reviews: list[int]) -> PhaseReport:
    max_result = results[-1] if results else 0
    max_review = reviews[-1] if reviews else 0

    if max_review > 0:
        latest = store.read_json(ArtifactKind.STEP_REVIEW, max_review)
        if latest is not None and latest.get("status") == "needs_changes":
            return PhaseReport(
                phase=Phase.REVIEWING_STEP,
                label=f"Phase 5b: Reviewing Step {max_review}",
                detail=f"Step {max_review} needs fixes. Re-launch implementer with fix_findings.",
                step=max_review,
            )

    if max_result > max_review:
        return PhaseReport(
            phase=Phase.REVIEWING_STEP,
            label=f"Phase 5b: Reviewing Step {max_result}",
            detail=f"Step {max_result} implemented, awaiting review.",
            step=max_result,
        )

    next_step = max_review + 1
    return PhaseReport(
        phase=Phase.IMPLEMENTING_STEP,
        label=f"Phase 5a: Implementing Step {next_step}",
        detail=f"{max_review} steps reviewed so far.",
        step=next_step,
    )


def _infer_plan_review_phase(review: dict[str, Any]) -> PhaseReport:
    status = review.get("status")
    if status == "needs_changes":
        return PhaseReport(
            phase=Phase.PLAN_REVISION,
            label="Phase 3: Plan Revision",
            detail="Plan review returned needs_changes. Analyzer should revise.",
        )
    if status == "needs_clarification":
        questions = _questions(review)
        detail = "Plan review needs clarification. Ask the user before revising."
        if questions:
            detail += " Questions: " + " | ".join(questions)
        return PhaseReport(
            phase=Phase.CLARIFICATION,
            label="Phase 3: Clarification Needed",
            detail=detail,
            questions=questions,
        )
    if status == "approved":
        return PhaseReport(
            phase=Phase.USER_APPROVAL,
            label="Phase 4: User Review",
            detail="Plan approved by reviewer. Waiting for user approval of plan.md.",
        )
    if status == "rejected":
        return PhaseReport(
            phase=Phase.PLAN_REJECTED,
            label="Phase 2: Plan Rejected",
            detail="Plan was rejected by review. Escalate to user.",
        )
    return PhaseReport(
        phase=Phase.PLAN_REVIEW,
        label="Phase 2: Plan Review",
        detail=f"Review status: {status}",
    )


def infer_phase(session_dir: Path) -> PhaseReport:
    store = ArtifactStore(session_dir)

    ui_review = store.read_json(ArtifactKind.UI_REVIEW)
    if ui_review is not None:
        return PhaseReport(
            phase=Phase.UI_VERIFICATION,
            label="Phase 7: UI Verification",
            detail=f"Status: {ui_review.get('status')}",
        )

    code_review = store.read_json(ArtifactKind.CODE_REVIEW)
    if code_review is not None:
        status = code_review.get("status")
        if status == "needs_changes":
            findings = code_review.get("findings")
            critical = _count_severity(findings, "critical")
            major = _count_severity(findings, "major")
            return PhaseReport(
                phase=Phase.FINAL_REVIEW,
                label="Phase 6: Final Review",
                detail=(
                    f"Status: needs_changes | {critical} critical, {major} major findings. "
                    "Launch implementer to fix."
                ),
            )
        return PhaseReport(
            phase=Phase.FINAL_REVIEW,
            label="Phase 6: Final Review",
            detail=f"Status: {status}",
        )

    impl_result = store.read_json(ArtifactKind.IMPL_RESULT)
    if impl_result is not None:
        return PhaseReport(
            phase=Phase.IMPLEMENTATION_COMPLETE,
            label="Phase 5: Implementation Complete",
            detail=f"Status: {impl_result.get('status')} | {_step_count(impl_result)} steps",
        )

    step_results = store.step_numbers(ArtifactKind.STEP_RESULT)
    step_reviews = store.step_numbers(ArtifactKind.STEP_REVIEW)
    if step_results or step_reviews:
        return _infer_step_phase(store, step_results, step_reviews)

    plan_review = store.read_json(ArtifactKind.PLAN_REVIEW)
    if plan_review is not None:
        return _infer_plan_review_phase(plan_review)

    has_plan_md = store.exists(ArtifactKind.PLAN_MD)
    has_plan_json = store.exists(ArtifactKind.PLAN_JSON)
    if has_plan_md and has_plan_json:
        return PhaseReport(
            phase=Phase.PLAN_REVIEW_PENDING,
            label="Phase 2: Plan Review",
            detail="Plan created, awaiting reviewer.",
        )
    if not has_plan_md and not has_plan_json:
        return PhaseReport(
            phase=Phase.ANALYZING,
            label="Phase 1: Analyzing",
            detail="No plan artifacts yet. Analyzer should be running.",
        )
    return PhaseReport(
        phase=Phase.ANALYZING_PARTIAL_PLAN,
        label="Phase 1: Analyzing",
        detail="Plan partially created. Waiting for analyzer to finish.",
    )


def build_guidance(project_root: Path, session_id: str | None = None) -> str | None:
    """Render ``[PIPELINE]`` guidance lines for the prompt-submit hook.

    Returns ``None`` when no session directory exists, which callers treat as
    "no active pipeline".
    """
    session_dir = resolve_session_dir(project_root, session_id)
    if session_dir is None:
        return None

    store = ArtifactStore(session_dir)
    if store.read_json(ArtifactKind.PIPELINE_TASKS) is None:
        return "\n".join(
            [
                f"[PIPELINE] {session_dir.name}/ exists but pipeline-tasks.json is missing: "
                "initialization incomplete.",
                "[PIPELINE] Create the phase tasks with blockedBy dependencies, then write "
                "pipeline-tasks.json with their ids.",
                "[PIPELINE] Do NOT launch subagents until pipeline-tasks.json exists.",
            ]
        )

    report = infer_phase(session_dir)
    lines = [f"[PIPELINE] {report.label}"]
    if report.detail:
        lines.append(f"[PIPELINE] {report.detail}")
    lines.append(
        "[PIPELINE] Main Loop: TaskList() -> find unblocked pending task -> execute -> "
        "complete -> repeat."
    )
    return "\n".join(lines)
