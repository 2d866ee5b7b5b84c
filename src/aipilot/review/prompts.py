from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from aipilot.aggregate import DEFAULT_MAX_STEPS, write_implementation_result
from aipilot.gate import ReviewKind
from aipilot.review.base import ReviewInputError, ReviewRequest
from aipilot.state.artifacts import ArtifactKind, ArtifactStore, read_json_safe

logger = logging.getLogger(__name__)

SCHEMA_NAMES = {
    ReviewKind.PLAN: "plan-review",
    ReviewKind.STEP: "step-review",
    ReviewKind.FINAL: "code-review",
}

FINDING_SHAPE = """    {
      "severity": "critical|major|minor|suggestion",
      "category": "bug|security|performance|quality|testing|dead-code",
      "file": "path/to/file",
      "line": 0,
      "description": "Issue description",
      "recommendation": "How to fix"
    }"""

PLAN_REVIEW_SHAPE = """{
  "status": "approved|needs_changes|needs_clarification|rejected",
  "summary": "One paragraph assessment",
  "findings": [
    {
      "severity": "critical|major|minor|suggestion",
      "category": "completeness|feasibility|security|design|testing|ordering",
      "step_id": 1,
      "description": "Issue description",
      "recommendation": "How to fix"
    }
  ],
  "requirements_coverage": {
    "fully_covered": [],
    "partially_covered": [],
    "missing": []
  },
  "clarification_questions": ["Only when status is needs_clarification"],
  "verdict": "What must change (if not approved)"
}"""

STEP_REVIEW_SHAPE = """{{
  "step_id": {step},
  "status": "approved|needs_changes|rejected",
  "summary": "One paragraph assessment of this step",
  "step_adherence": {{
    "implemented": true,
    "correct": true,
    "notes": ""
  }},
  "findings": [
{findings}
  ],
  "verdict": "What must change (if not approved)"
}}"""

FINAL_REVIEW_SHAPE = """{{
  "status": "approved|needs_changes|rejected",
  "summary": "One paragraph assessment",
  "plan_adherence": {{
    "steps_verified": [
      {{"step_id": 1, "implemented": true, "correct": true, "notes": ""}}
    ],
    "deviations": []
  }},
  "findings": [
{findings}
  ],
  "tests_review": {{
    "coverage_adequate": true,
    "missing_tests": [],
    "test_quality": "Assessment"
  }},
  "checklist": {{
    "item": "pass|fail|n/a"
  }},
  "verdict": "What must change (if not approved)"
}}"""


@dataclass(slots=True, frozen=True)
class ReviewPrompt:
    text: str
    schema_path: Path | None = None
    standards_path: Path | None = None


def resolve_standards(plugin_root: Path | None, mode: str) -> Path | None:
    if plugin_root is None:
        return None
    docs = plugin_root / "docs"
    for candidate in (docs / f"standards-{mode}.md", docs / "standards.md"):
        if candidate.is_file():
            return candidate
    logger.info("No standards document for mode %s under %s", mode, docs)
    return None


def resolve_schema(plugin_root: Path | None, kind: ReviewKind) -> Path | None:
    if plugin_root is None:
        return None
    candidate = plugin_root / "docs" / "schemas" / f"{SCHEMA_NAMES[kind]}.schema.json"
    return candidate if candidate.is_file() else None


def git_diff_stat(project_root: Path) -> str | None:
    try:
        proc = subprocess.run(
            ["git", "--no-pager", "diff", "--stat", "HEAD"],
            cwd=project_root,
            text=True,
            capture_output=True,
            timeout=30,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout.strip() or "(no uncommitted changes)"


def summarize_previous_review(previous: dict, project_root: Path) -> str:
    findings = previous.get("findings")
    findings = findings if isinstance(findings, list) else []
    severities: dict[str, int] = {}
    for item in findings:
        if isinstance(item, dict):
            severity = str(item.get("severity", "unknown"))
            severities[severity] = severities.get(severity, 0) + 1
    counts = ", ".join(f"{count} {name}" for name, count in sorted(severities.items()))
    lines = [
        "## Changes Since Previous Review",
        "",
        f"Previous status: {previous.get('status')}",
        f"Previous findings: {len(findings)}" + (f" ({counts})" if counts else ""),
    ]
    verdict = previous.get("verdict")
    if isinstance(verdict, str) and verdict.strip():
        lines.append(f"Previous verdict: {verdict.strip()}")
    diff_stat = git_diff_stat(project_root)
    if diff_stat:
        lines.extend(["", "Working tree changes (git diff --stat HEAD):", "", diff_stat])
    lines.extend(
        [
            "",
            "Verify every previous finding was addressed before raising new ones.",
        ]
    )
    return "\n".join(lines)


class ReviewPromptBuilder:
    """Builds a prompt that points the reviewer at artifacts instead of inlining them."""

    def __init__(
        self,
        *,
        plugin_root: Path | None = None,
        mode: str = "production",
        max_steps: int = DEFAULT_MAX_STEPS,
    ) -> None:
        self.plugin_root = plugin_root
        self.mode = mode
        self.max_steps = max_steps

    def _require(self, store: ArtifactStore, kind: ArtifactKind, step: int | None = None) -> Path:
        path = store.path(kind, step)
        if not path.is_file():
            raise ReviewInputError(f"Missing {path.name} in {store.session_dir}")
        return path

    def _inputs(self, request: ReviewRequest) -> tuple[str, list[tuple[str, Path]], str]:
        store = ArtifactStore(request.session_dir)
        if request.kind is ReviewKind.PLAN:
            if not (store.exists(ArtifactKind.PLAN_MD) and store.exists(ArtifactKind.PLAN_JSON)):
                raise ReviewInputError(
                    f"Missing plan files. Expected plan.md and plan.json in {request.session_dir}"
                )
            intro = (
                "You are a plan reviewer. Review the implementation plan for correctness, "
                "completeness, feasibility, and security."
            )
            refs = [
                ("Plan (Markdown)", store.path(ArtifactKind.PLAN_MD)),
                ("Plan (JSON)", store.path(ArtifactKind.PLAN_JSON)),
            ]
            return intro, refs, PLAN_REVIEW_SHAPE

        if request.kind is ReviewKind.STEP:
            step = request.step
            result_path = self._require(store, ArtifactKind.STEP_RESULT, step)
            intro = (
                f"You are a code reviewer. Review ONLY the changes from step {step} of the "
                "implementation plan. Verify that everything in this step is complete and "
                "correct. Inspect the working tree with `git diff HEAD`."
            )
            refs = [(f"Step {step} result", result_path)]
            if store.exists(ArtifactKind.PLAN_JSON):
                refs.insert(0, ("Implementation plan", store.path(ArtifactKind.PLAN_JSON)))
            return intro, refs, STEP_REVIEW_SHAPE.format(step=step, findings=FINDING_SHAPE)

        if not store.exists(ArtifactKind.IMPL_RESULT):
            if write_implementation_result(request.session_dir, self.max_steps) is None:
                raise ReviewInputError(
                    f"Missing impl-result.json and no step results to aggregate in "
                    f"{request.session_dir}"
                )
        intro = (
            "You are a code reviewer. Review ALL implementation changes across all steps and "
            "verify overall completeness against the full plan. Inspect the working tree with "
            "`git diff HEAD`."
        )
        refs = [("Implementation result (all steps)", store.path(ArtifactKind.IMPL_RESULT))]
        if store.exists(ArtifactKind.PLAN_JSON):
            refs.insert(0, ("Implementation plan", store.path(ArtifactKind.PLAN_JSON)))
        return intro, refs, FINAL_REVIEW_SHAPE.format(findings=FINDING_SHAPE)

    def build(self, request: ReviewRequest) -> ReviewPrompt:
        intro, refs, shape = self._inputs(request)
        standards = resolve_standards(self.plugin_root, self.mode)

        parts = [intro, "", "## Context Files", ""]
        parts.extend(f"- {label}: {path}" for label, path in refs)
        if standards is not None:
            parts.append(f"- Review standards ({self.mode}): {standards}")
        else:
            parts.append(f"- Review standards: none available, apply {self.mode} judgement")

        previous = read_json_safe(request.output_path)
        if isinstance(previous, dict):
            parts.extend(["", summarize_previous_review(previous, request.project_root)])

        parts.extend(
            [
                "",
                "## Your Task",
                "",
                "Read the context files, then respond with a JSON review using this exact "
                "structure:",
                "",
                shape,
                "",
                "Only output valid JSON. No other text.",
            ]
        )
        return ReviewPrompt(
            text="\n".join(parts),
            schema_path=resolve_schema(self.plugin_root, request.kind),
            standards_path=standards,
        )

