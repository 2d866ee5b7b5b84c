"""Single-invocation lifecycle for the external reviewer.

One ``ReviewInvoker.run`` call walks an explicit state machine::

    idle -> locking -> building_prompt -> running -> validating -> complete
              |              |                |            |
         blocked_lock   blocked_input    failed_timeout  blocked_validation
                        skipped          failed_process

Every transition is checked against ``TRANSITIONS`` and the project lock is
released on all exit paths, including task cancellation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from aipilot.gate import DEFAULT_MIN_SUMMARY_LENGTH, ReviewKind, validate_payload
from aipilot.review.base import (
    TRANSITIONS,
    InvocationResult,
    InvocationState,
    LockHeldError,
    ReviewerExecutionError,
    ReviewerProcessError,
    ReviewerTimeoutError,
    ReviewInputError,
    ReviewRequest,
    SessionExpiredError,
)
from aipilot.review.codex import (
    CodexRunner,
    ProcessOutput,
    extract_session_token,
    is_session_expired,
)
from aipilot.review.lock import ReviewLock
from aipilot.review.prompts import ReviewPrompt, ReviewPromptBuilder
from aipilot.review.sessions import TOKEN_PATTERN, SessionTokenStore
from aipilot.state.artifacts import ArtifactKind, write_json_atomic

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]

DEFAULT_TIMEOUT_SECONDS = 20 * 60
_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def repair_review_output(
    raw: str, kind: ReviewKind, step: int | None = None
) -> dict[str, Any] | None:
    text = raw.strip()
    fenced = _FENCE_PATTERN.match(text)
    if fenced:
        text = fenced.group(1)
    try:
        payload = json.loads(text)
    except ValueError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            payload = json.loads(text[start : end + 1])
        except ValueError:
            return None
    if not isinstance(payload, dict):
        return None

    if kind is ReviewKind.STEP:
        step_id = payload.get("step_id")
        if isinstance(step_id, str) and step_id.strip().isdigit():
            payload["step_id"] = int(step_id.strip())
        elif step_id is None and step is not None:
            payload["step_id"] = step
    return payload


def build_placeholder(
    request: ReviewRequest,
    *,
    summary: str,
    verdict: str,
    note: str,
    marker: dict[str, Any],
    findings: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Return a structurally valid ``needs_changes`` review for ``request``.

    Used when no real review could be produced, so that phase inference and
    the gate never see a missing or half-written decision artifact.
    """
    payload: dict[str, Any] = {
        "status": "needs_changes",
        "summary": summary,
        "findings": list(findings or []),
        "verdict": verdict,
        **marker,
    }
    if request.kind is ReviewKind.PLAN:
        payload["requirements_coverage"] = {
            "fully_covered": [],
            "partially_covered": [],
            "missing": [note],
        }
    elif request.kind is ReviewKind.STEP:
        payload["step_id"] = request.step
        payload["step_adherence"] = {"implemented": False, "correct": False, "notes": note}
    else:
        payload["plan_adherence"] = {"steps_verified": [], "deviations": [note]}
        payload["tests_review"] = {
            "coverage_adequate": False,
            "missing_tests": [],
            "test_quality": note,
        }
        payload["checklist"] = {"automated_review": "not performed"}
    return payload


class ReviewInvoker:
    def __init__(
        self,
        *,
        runner: CodexRunner | None,
        prompt_builder: ReviewPromptBuilder,
        lock: ReviewLock,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        min_summary_length: int = DEFAULT_MIN_SUMMARY_LENGTH,
        event_hook: EventHook | None = None,
    ) -> None:
        self.runner = runner
        self.prompt_builder = prompt_builder
        self.lock = lock
        self.timeout_seconds = timeout_seconds
        self.min_summary_length = min_summary_length
        self.event_hook = event_hook
        self.state = InvocationState.IDLE

    def _emit(self, event: str, **fields: Any) -> None:
        if self.event_hook is None:
            return
        payload = {"event": event, "timestamp": _utcnow_iso()}
        payload.update(fields)
        self.event_hook(payload)

    def _transition(self, target: InvocationState) -> None:
        allowed = TRANSITIONS.get(self.state, frozenset())
        if target not in allowed:
            raise RuntimeError(f"Illegal reviewer transition {self.state} -> {target}")
        logger.debug("Reviewer state %s -> %s", self.state, target)
        self.state = target

    def _finish(self, target: InvocationState, result: InvocationResult) -> InvocationResult:
        self._transition(target)
        result.state = target
        if target in (InvocationState.COMPLETE, InvocationState.SKIPPED):
            self._emit(
                "complete",
                outcome=target.value,
                status=result.status,
                output=str(result.output_path) if result.output_path else None,
            )
        else:
            self._emit(
                "error",
                outcome=target.value,
                message=result.message,
                errors=list(result.errors or []),
            )
        return result

    @staticmethod
    def _write_log(
        request: ReviewRequest, output: ProcessOutput | None, *, partial: bool = False
    ) -> None:
        if output is None:
            return
        sections: list[str] = []
        if output.stderr.strip():
            sections.append(output.stderr)
        if partial and output.stdout.strip():
            sections.append("--- partial stdout ---\n" + output.stdout)
        if not sections:
            return
        log_path = request.session_dir / ArtifactKind.REVIEWER_LOG.value
        log_path.write_text("\n".join(sections), encoding="utf-8")

    def _write_error_artifact(
        self,
        request: ReviewRequest,
        outcome: InvocationState,
        message: str,
        errors: list[str] | None = None,
    ) -> None:
        findings = [
            {
                "severity": "major",
                "category": "quality",
                "description": error,
                "recommendation": "Re-run the review after correcting the reviewer output.",
            }
            for error in errors or []
        ]
        payload = build_placeholder(
            request,
            summary=f"Automated review failed ({outcome.value}): {message}",
            verdict="Automated review did not complete. Manual review recommended.",
            note=f"Reviewer {outcome.value} - manual review recommended",
            marker={"review_error": outcome.value},
            findings=findings,
        )
        write_json_atomic(request.output_path, payload)

    async def run(self, request: ReviewRequest) -> InvocationResult:
        self.state = InvocationState.IDLE
        self._emit("start", type=request.kind.value, step_id=request.step)
        self._transition(InvocationState.LOCKING)
        try:
            self.lock.acquire()
        except LockHeldError as exc:
            logger.warning("%s", exc)
            result = InvocationResult(state=self.state, message=str(exc))
            return self._finish(InvocationState.BLOCKED_LOCK, result)
        try:
            return await self._run_locked(request)
        finally:
            self.lock.release()

    async def _run_locked(self, request: ReviewRequest) -> InvocationResult:
        self._transition(InvocationState.BUILDING_PROMPT)
        try:
            prompt = self.prompt_builder.build(request)
        except ReviewInputError as exc:
            result = InvocationResult(state=self.state, errors=[str(exc)], message=str(exc))
            return self._finish(InvocationState.BLOCKED_INPUT, result)

        runner = self.runner
        if runner is None:
            logger.error("Codex CLI not found; writing placeholder %s", request.output_path.name)
            placeholder = build_placeholder(
                request,
                summary="Codex CLI not available. Review skipped.",
                verdict="Codex not installed. Automated review gate was skipped.",
                note="Codex unavailable - manual review recommended",
                marker={"review_skipped": True},
            )
            write_json_atomic(request.output_path, placeholder)
            result = InvocationResult(
                state=self.state,
                output_path=request.output_path,
                status=placeholder["status"],
                message="Codex CLI not available; placeholder review written.",
            )
            return self._finish(InvocationState.SKIPPED, result)

        self._transition(InvocationState.RUNNING)
        scratch = request.session_dir / f".codex-output-{request.session_key}.json"
        try:
            stdout = await self._execute(request, prompt, scratch, runner)
        except ReviewerExecutionError as exc:
            outcome = (
                InvocationState.FAILED_TIMEOUT
                if isinstance(exc, ReviewerTimeoutError)
                else InvocationState.FAILED_PROCESS
            )
            self._write_log(request, runner.partial_output, partial=True)
            self._write_error_artifact(request, outcome, str(exc))
            scratch.unlink(missing_ok=True)
            result = InvocationResult(
                state=self.state,
                output_path=request.output_path,
                message=str(exc),
                errors=[str(exc)],
            )
            return self._finish(outcome, result)
        except asyncio.CancelledError:
            self._write_log(request, runner.partial_output, partial=True)
            self._write_error_artifact(request, InvocationState.FAILED_PROCESS, "cancelled")
            scratch.unlink(missing_ok=True)
            self._finish(
                InvocationState.FAILED_PROCESS,
                InvocationResult(state=self.state, message="Review cancelled by signal."),
            )
            raise

        self._transition(InvocationState.VALIDATING)
        try:
            return self._validate(request, scratch, stdout)
        finally:
            scratch.unlink(missing_ok=True)

    async def _execute(
        self, request: ReviewRequest, prompt: ReviewPrompt, scratch: Path, runner: CodexRunner
    ) -> str:
        tokens = SessionTokenStore(request.session_dir)
        token = tokens.load(request.session_key)
        retried = False
        while True:
            scratch.unlink(missing_ok=True)
            command = runner.build_command(
                prompt.text,
                output_path=scratch,
                schema_path=prompt.schema_path,
                session_token=token,
            )
            if token:
                self._emit("resuming_session", session_key=request.session_key)
            self._emit(
                "invoking_codex",
                type=request.kind.value,
                step_id=request.step,
                resume=bool(token),
                retry=retried,
                standards=str(prompt.standards_path) if prompt.standards_path else None,
            )
            output = await runner.run(
                command,
                cwd=request.project_root,
                timeout_seconds=self.timeout_seconds,
            )
            self._write_log(request, output)

            if is_session_expired(output):
                tokens.discard(request.session_key)
                self._emit("session_expired", session_key=request.session_key, retry=retried)
                if retried:
                    raise SessionExpiredError(
                        "Codex session expired again after retrying without resume.",
                        exit_code=output.returncode,
                        stderr=output.stderr,
                    )
                retried = True
                token = None
                self._emit("session_expired_retry", session_key=request.session_key)
                continue

            if output.returncode != 0:
                raise ReviewerProcessError(
                    f"Codex exited with code {output.returncode}",
                    exit_code=output.returncode,
                    stderr=output.stderr,
                )

            new_token = extract_session_token(output.combined)
            if new_token and TOKEN_PATTERN.match(new_token):
                tokens.save(request.session_key, new_token)
            return output.stdout

    def _validate(self, request: ReviewRequest, scratch: Path, stdout: str) -> InvocationResult:
        try:
            raw = scratch.read_text(encoding="utf-8")
        except OSError:
            raw = ""
        if not raw.strip():
            raw = stdout

        payload = repair_review_output(raw, request.kind, request.step)
        if payload is None:
            errors = ["Output is not valid JSON"]
        else:
            errors = validate_payload(
                payload, request.kind, min_summary_length=self.min_summary_length
            )

        if errors:
            invalid_path = request.output_path.with_name(request.output_path.name + ".invalid")
            invalid_path.write_text(raw, encoding="utf-8")
            self._write_error_artifact(
                request,
                InvocationState.BLOCKED_VALIDATION,
                "reviewer output failed validation",
                errors,
            )
            result = InvocationResult(
                state=self.state,
                output_path=request.output_path,
                errors=errors,
                message=f"Reviewer output failed validation; raw output in {invalid_path.name}",
            )
            return self._finish(InvocationState.BLOCKED_VALIDATION, result)

        write_json_atomic(request.output_path, payload)
        result = InvocationResult(
            state=self.state,
            output_path=request.output_path,
            status=payload.get("status"),
        )
        logger.info("%s review complete: %s", request.kind.value, result.status)
        return self._finish(InvocationState.COMPLETE, result)
