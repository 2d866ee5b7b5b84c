import json
from pathlib import Path

import pytest

from aipilot.gate import ReviewKind
from aipilot.review.base import ReviewInputError, ReviewRequest
from aipilot.review.prompts import ReviewPromptBuilder, resolve_standards


@pytest.fixture
def session(tmp_path: Path) -> Path:
    session_dir = tmp_path / ".task-0a0b0c"
    session_dir.mkdir()
    (session_dir / "plan.md").write_text("# Plan\n", encoding="utf-8")
    (session_dir / "plan.json").write_text(json.dumps({"steps": [{"id": 1}]}), encoding="utf-8")
    return session_dir


@pytest.fixture
def plugin_root(tmp_path: Path) -> Path:
    root = tmp_path / "plugin"
    (root / "docs" / "schemas").mkdir(parents=True)
    (root / "docs" / "standards.md").write_text("# Standards\n", encoding="utf-8")
    (root / "docs" / "standards-prototype.md").write_text("# Prototype\n", encoding="utf-8")
    (root / "docs" / "schemas" / "plan-review.schema.json").write_text("{}", encoding="utf-8")
    return root


def test_standards_follow_mode(plugin_root: Path) -> None:
    docs = plugin_root / "docs"
    assert resolve_standards(plugin_root, "prototype") == docs / "standards-prototype.md"
    assert resolve_standards(plugin_root, "production") == docs / "standards.md"
    assert resolve_standards(None, "production") is None


def test_plan_prompt_references_files(tmp_path: Path, session: Path, plugin_root: Path) -> None:
    builder = ReviewPromptBuilder(plugin_root=plugin_root, mode="prototype")

    prompt = builder.build(ReviewRequest(ReviewKind.PLAN, tmp_path, session))

    assert str(session / "plan.md") in prompt.text
    assert str(session / "plan.json") in prompt.text
    assert "Review standards (prototype)" in prompt.text
    assert '"requirements_coverage"' in prompt.text
    assert prompt.schema_path == plugin_root / "docs" / "schemas" / "plan-review.schema.json"
    assert prompt.standards_path == plugin_root / "docs" / "standards-prototype.md"
    assert "Changes Since Previous Review" not in prompt.text


def test_step_prompt_needs_step_result(tmp_path: Path, session: Path) -> None:
    builder = ReviewPromptBuilder()
    request = ReviewRequest(ReviewKind.STEP, tmp_path, session, step=1)

    with pytest.raises(ReviewInputError):
        builder.build(request)

    (session / "step-1-result.json").write_text('{"step_id": 1}', encoding="utf-8")
    prompt = builder.build(request)

    assert '"step_id": 1' in prompt.text
    assert "step 1" in prompt.text
    assert prompt.schema_path is None


def test_final_prompt_aggregates_on_demand(tmp_path: Path, session: Path) -> None:
    builder = ReviewPromptBuilder()
    request = ReviewRequest(ReviewKind.FINAL, tmp_path, session)

    with pytest.raises(ReviewInputError):
        builder.build(request)

    (session / "step-1-result.json").write_text(
        json.dumps({"step_id": 1, "status": "complete"}), encoding="utf-8"
    )
    prompt = builder.build(request)

    assert (session / "impl-result.json").is_file()
    assert str(session / "impl-result.json") in prompt.text
    assert '"checklist"' in prompt.text


def test_previous_review_is_summarized(tmp_path: Path, session: Path) -> None:
    previous = {
        "status": "needs_changes",
        "findings": [{"severity": "major"}, {"severity": "major"}, {"severity": "minor"}],
        "verdict": "Split step 2 into two steps.",
    }
    (session / "plan-review.json").write_text(json.dumps(previous), encoding="utf-8")

    prompt = ReviewPromptBuilder().build(ReviewRequest(ReviewKind.PLAN, tmp_path, session))

    assert "Changes Since Previous Review" in prompt.text
    assert "Previous findings: 3 (2 major, 1 minor)" in prompt.text
    assert "Split step 2 into two steps." in prompt.text
