import asyncio
import json
import time
from pathlib import Path
from typing import Any

import pytest

from aipilot.gate import ReviewKind, validate_payload
from aipilot.review import (
    CodexRunner,
    InvocationState,
    ProcessOutput,
    ReviewerTimeoutError,
    ReviewInvoker,
    ReviewLock,
    ReviewPromptBuilder,
    ReviewRequest,
    repair_review_output,
)
from aipilot.review.sessions import SessionTokenStore

THREAD_ID = "0199a213-81c0-7800-8aa1-bbab2a035a53"
PLAN_REVIEW = {
    "status": "approved",
    "summary": "The plan is complete and well ordered.",
    "findings": [],
    "requirements_coverage": {"fully_covered": ["login"], "partially_covered": [], "missing": []},
    "verdict": "",
}
EXPIRED = ProcessOutput(returncode=1, stdout="", stderr="Error: session not found")


class ScriptedRunner(CodexRunner):
    """Replays canned codex outcomes instead of spawning a process."""

    def __init__(self, responses: list[Any]) -> None:
        super().__init__("codex")
        self.responses = list(responses)
        self.commands: list[list[str]] = []
        self.partial: ProcessOutput | None = None

    async def run(
        self,
        command: list[str],
        *,
        cwd: Path,
        timeout_seconds: float,
    ) -> ProcessOutput:
        _ = cwd, timeout_seconds
        self.commands.append(command)
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            self.partial_output = self.partial
            raise response
        if isinstance(response, ProcessOutput):
            return response
        text, output = response
        if text is not None:
            Path(command[command.index("-o") + 1]).write_text(text, encoding="utf-8")
        return output


def _ok(stdout: str = "") -> ProcessOutput:
    return ProcessOutput(returncode=0, stdout=stdout, stderr="")


@pytest.fixture
def project(tmp_path: Path) -> tuple[Path, Path]:
    project_root = tmp_path / "project"
    session_dir = project_root / ".task-abc123"
    session_dir.mkdir(parents=True)
    (session_dir / "plan.md").write_text("# Plan\n", encoding="utf-8")
    (session_dir / "plan.json").write_text(json.dumps({"steps": [{"id": 1}]}), encoding="utf-8")
    return project_root, session_dir


def _invoker(
    tmp_path: Path, runner: CodexRunner | None, events: list[dict[str, Any]]
) -> ReviewInvoker:
    return ReviewInvoker(
        runner=runner,
        prompt_builder=ReviewPromptBuilder(),
        lock=ReviewLock(tmp_path / "review.lock"),
        timeout_seconds=30,
        event_hook=events.append,
    )


def _names(events: list[dict[str, Any]]) -> list[str]:
    return [event["event"] for event in events]


def test_successful_plan_review(tmp_path: Path, project: tuple[Path, Path]) -> None:
    project_root, session_dir = project
    fenced = "```json\n" + json.dumps(PLAN_REVIEW) + "\n```"
    stdout = json.dumps({"type": "thread.started", "thread_id": THREAD_ID})
    runner = ScriptedRunner([(fenced, _ok(stdout))])
    events: list[dict[str, Any]] = []

    result = asyncio.run(
        _invoker(tmp_path, runner, events).run(
            ReviewRequest(ReviewKind.PLAN, project_root, session_dir)
        )
    )

    assert result.state is InvocationState.COMPLETE
    assert result.exit_code == 0
    assert result.status == "approved"
    written = json.loads((session_dir / "plan-review.json").read_text(encoding="utf-8"))
    assert written["requirements_coverage"]["fully_covered"] == ["login"]
    assert SessionTokenStore(session_dir).load("plan") == THREAD_ID
    assert _names(events) == ["start", "invoking_codex", "complete"]
    assert events[1]["standards"] is None
    assert all("timestamp" in event for event in events)
    assert not (tmp_path / "review.lock").exists()
    assert not list(session_dir.glob(".codex-output-*"))


def test_stored_session_is_resumed(tmp_path: Path, project: tuple[Path, Path]) -> None:
    project_root, session_dir = project
    SessionTokenStore(session_dir).save("plan", THREAD_ID)
    runner = ScriptedRunner([(json.dumps(PLAN_REVIEW), _ok())])
    events: list[dict[str, Any]] = []

    asyncio.run(
        _invoker(tmp_path, runner, events).run(
            ReviewRequest(ReviewKind.PLAN, project_root, session_dir)
        )
    )

    assert runner.commands[0][-3:-1] == ["resume", THREAD_ID]
    assert "resuming_session" in _names(events)


def test_session_expiry_retries_once_without_resume(
    tmp_path: Path, project: tuple[Path, Path]
) -> None:
    project_root, session_dir = project
    SessionTokenStore(session_dir).save("plan", THREAD_ID)
    runner = ScriptedRunner([EXPIRED, (json.dumps(PLAN_REVIEW), _ok())])
    events: list[dict[str, Any]] = []

    result = asyncio.run(
        _invoker(tmp_path, runner, events).run(
            ReviewRequest(ReviewKind.PLAN, project_root, session_dir)
        )
    )

    assert result.state is InvocationState.COMPLETE
    assert "resume" in runner.commands[0]
    assert "resume" not in runner.commands[1]
    assert "session_expired_retry" in _names(events)


def test_second_session_expiry_is_fatal(tmp_path: Path, project: tuple[Path, Path]) -> None:
    project_root, session_dir = project
    SessionTokenStore(session_dir).save("plan", THREAD_ID)
    runner = ScriptedRunner([EXPIRED, EXPIRED, EXPIRED])
    events: list[dict[str, Any]] = []

    result = asyncio.run(
        _invoker(tmp_path, runner, events).run(
            ReviewRequest(ReviewKind.PLAN, project_root, session_dir)
        )
    )

    assert result.state is InvocationState.FAILED_PROCESS
    assert result.exit_code == 2
    assert len(runner.commands) == 2
    assert _names(events).count("session_expired") == 2
    assert _names(events)[-1] == "error"
    artifact = json.loads((session_dir / "plan-review.json").read_text(encoding="utf-8"))
    assert artifact["review_error"] == "failed_process"
    assert validate_payload(artifact, ReviewKind.PLAN) == []
    assert "session not found" in (session_dir / "codex_stderr.log").read_text(encoding="utf-8")


def test_non_zero_exit_is_a_process_failure(tmp_path: Path, project: tuple[Path, Path]) -> None:
    project_root, session_dir = project
    runner = ScriptedRunner([ProcessOutput(returncode=7, stdout="", stderr="boom")])

    result = asyncio.run(
        _invoker(tmp_path, runner, []).run(
            ReviewRequest(ReviewKind.PLAN, project_root, session_dir)
        )
    )

    assert result.state is InvocationState.FAILED_PROCESS
    assert "code 7" in result.message


def test_lock_contention_writes_nothing(tmp_path: Path, project: tuple[Path, Path]) -> None:
    project_root, session_dir = project
    (tmp_path / "review.lock").write_text(
        json.dumps({"pid": 999, "timestamp": time.time()}), encoding="utf-8"
    )
    runner = ScriptedRunner([])
    events: list[dict[str, Any]] = []

    result = asyncio.run(
        _invoker(tmp_path, runner, events).run(
            ReviewRequest(ReviewKind.PLAN, project_root, session_dir)
        )
    )

    assert result.state is InvocationState.BLOCKED_LOCK
    assert result.exit_code == 4
    assert "pid: 999" in result.message
    assert runner.commands == []
    assert not (session_dir / "plan-review.json").exists()
    assert (tmp_path / "review.lock").exists()


def test_missing_inputs_block_before_running(tmp_path: Path, project: tuple[Path, Path]) -> None:
    project_root, session_dir = project
    runner = ScriptedRunner([])

    result = asyncio.run(
        _invoker(tmp_path, runner, []).run(
            ReviewRequest(ReviewKind.STEP, project_root, session_dir, step=3)
        )
    )

    assert result.state is InvocationState.BLOCKED_INPUT
    assert result.exit_code == 1
    assert "step-3-result.json" in result.message
    assert runner.commands == []
    assert not (session_dir / "step-3-review.json").exists()
    assert not (tmp_path / "review.lock").exists()


def test_unavailable_reviewer_writes_placeholder(
    tmp_path: Path, project: tuple[Path, Path]
) -> None:
    project_root, session_dir = project
    (session_dir / "step-1-result.json").write_text(
        json.dumps({"step_id": 1, "status": "complete"}), encoding="utf-8"
    )

    result = asyncio.run(
        _invoker(tmp_path, None, []).run(
            ReviewRequest(ReviewKind.STEP, project_root, session_dir, step=1)
        )
    )

    assert result.state is InvocationState.SKIPPED
    assert result.exit_code == 0
    placeholder = json.loads((session_dir / "step-1-review.json").read_text(encoding="utf-8"))
    assert placeholder["review_skipped"] is True
    assert placeholder["status"] == "needs_changes"
    assert placeholder["step_id"] == 1
    assert validate_payload(placeholder, ReviewKind.STEP) == []


def test_invalid_output_is_kept_aside(tmp_path: Path, project: tuple[Path, Path]) -> None:
    project_root, session_dir = project
    runner = ScriptedRunner([('{"status": "approved"}', _ok())])

    result = asyncio.run(
        _invoker(tmp_path, runner, []).run(
            ReviewRequest(ReviewKind.PLAN, project_root, session_dir)
        )
    )

    assert result.state is InvocationState.BLOCKED_VALIDATION
    assert result.exit_code == 1
    assert "Missing required field: summary" in (result.errors or [])
    raw = (session_dir / "plan-review.json.invalid").read_text(encoding="utf-8")
    assert raw == '{"status": "approved"}'
    artifact = json.loads((session_dir / "plan-review.json").read_text(encoding="utf-8"))
    assert artifact["review_error"] == "blocked_validation"
    assert validate_payload(artifact, ReviewKind.PLAN) == []


def test_timeout_writes_error_artifact_and_log(tmp_path: Path, project: tuple[Path, Path]) -> None:
    project_root, session_dir = project
    runner = ScriptedRunner([ReviewerTimeoutError("Codex timed out after 30s")])
    runner.partial = ProcessOutput(returncode=-15, stdout="half a review", stderr="thinking")

    result = asyncio.run(
        _invoker(tmp_path, runner, []).run(
            ReviewRequest(ReviewKind.PLAN, project_root, session_dir)
        )
    )

    assert result.state is InvocationState.FAILED_TIMEOUT
    assert result.exit_code == 3
    log = (session_dir / "codex_stderr.log").read_text(encoding="utf-8")
    assert "thinking" in log
    assert "half a review" in log
    artifact = json.loads((session_dir / "plan-review.json").read_text(encoding="utf-8"))
    assert artifact["review_error"] == "failed_timeout"


def test_cancellation_releases_lock(tmp_path: Path, project: tuple[Path, Path]) -> None:
    project_root, session_dir = project
    runner = ScriptedRunner([asyncio.CancelledError()])
    runner.partial = ProcessOutput(returncode=-15, stdout="", stderr="interrupted")
    events: list[dict[str, Any]] = []

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(
            _invoker(tmp_path, runner, events).run(
                ReviewRequest(ReviewKind.PLAN, project_root, session_dir)
            )
        )

    assert not (tmp_path / "review.lock").exists()
    assert _names(events)[-1] == "error"
    assert "interrupted" in (session_dir / "codex_stderr.log").read_text(encoding="utf-8")


def test_repair_review_output() -> None:
    noisy = 'Here is my review:\n{"step_id": "2", "status": "approved"}\nThanks!'

    repaired = repair_review_output(noisy, ReviewKind.STEP, 2)

    assert repaired == {"step_id": 2, "status": "approved"}
    assert repair_review_output('{"status": "approved"}', ReviewKind.STEP, 4) == {
        "status": "approved",
        "step_id": 4,
    }
    assert repair_review_output("no json at all", ReviewKind.PLAN) is None
    assert repair_review_output("[1, 2]", ReviewKind.PLAN) is None
