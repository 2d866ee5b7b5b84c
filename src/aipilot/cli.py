from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from aipilot import __version__
from aipilot.aggregate import write_implementation_result
from aipilot.config import (
    DEFAULT_CONFIG_NAME,
    AipilotConfig,
    load_config,
    project_root_from_env,
    session_id_from_env,
)
from aipilot.errors import AipilotError, SessionResolutionError
from aipilot.gate import ReviewGate, ReviewKind, validate_artifact
from aipilot.phases import build_guidance
from aipilot.review import (
    CodexRunner,
    InvocationResult,
    ReviewInvoker,
    ReviewLock,
    ReviewPromptBuilder,
    ReviewRequest,
    find_codex,
    lock_path_for,
    preflight,
)
from aipilot.state.artifacts import ArtifactKind
from aipilot.state.session import resolve_session_dir

logger = logging.getLogger(__name__)

REVIEW_TYPES = [ReviewKind.PLAN.value, ReviewKind.STEP.value, ReviewKind.FINAL.value]
VALIDATE_TYPES = REVIEW_TYPES + [ReviewKind.IMPLEMENTATION.value]


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config_path: Path
    config: AipilotConfig


def _resolve_config_path(project_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    return config_path.resolve()


def _load_runtime(project_dir: str | None, config_value: str) -> Runtime:
    project_root = Path(project_dir).resolve() if project_dir else project_root_from_env()
    config_path = _resolve_config_path(project_root, config_value)
    try:
        config = load_config(config_path)
    except (OSError, ValueError, TypeError) as exc:
        raise click.ClickException(f"Could not load {config_path}: {exc}") from exc
    return Runtime(project_root=project_root, config_path=config_path, config=config)


def _require_session(project_root: Path) -> Path:
    try:
        session_dir = resolve_session_dir(project_root, session_id_from_env())
    except SessionResolutionError as exc:
        raise click.ClickException(str(exc)) from exc
    if session_dir is None:
        raise click.ClickException(f"No active session directory (.task-*) in {project_root}")
    return session_dir


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False))


def _build_invoker(runtime: Runtime, mode: str | None, plugin_root: str | None) -> ReviewInvoker:
    config = runtime.config
    codex_path = find_codex(config.reviewer.binary)
    runner = (
        CodexRunner(
            codex_path,
            kill_grace_seconds=max(0.0, float(config.reviewer.kill_grace_seconds)),
        )
        if codex_path
        else None
    )
    root_value = plugin_root or config.review.plugin_root
    lock_dir = Path(config.reviewer.lock_dir) if config.reviewer.lock_dir else None
    return ReviewInvoker(
        runner=runner,
        prompt_builder=ReviewPromptBuilder(
            plugin_root=Path(root_value).resolve() if root_value else None,
            mode=mode or config.review.mode,
            max_steps=config.aggregate.max_steps,
        ),
        lock=ReviewLock(
            lock_path_for(runtime.project_root, lock_dir),
            stale_seconds=float(config.reviewer.lock_stale_seconds),
        ),
        timeout_seconds=max(5.0, float(config.reviewer.timeout_seconds)),
        min_summary_length=config.gate.min_summary_length,
        event_hook=_echo_json,
    )


async def _run_cancellable(invoker: ReviewInvoker, request: ReviewRequest) -> InvocationResult:
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(signum, task.cancel)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(signum)
    try:
        return await invoker.run(request)
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


@click.group()
@click.version_option(__version__, prog_name="aipilot")
@click.option("--verbose", is_flag=True, default=False, help="Log at DEBUG level on stderr.")
def cli(verbose: bool) -> None:
    """Aipilot pipeline core: phase guidance, artifact gate and reviewer invocation."""
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@cli.command("review")
@click.option("--type", "review_type", type=click.Choice(REVIEW_TYPES), required=True)
@click.option("--step-id", "step_id", type=click.IntRange(min=1), default=None)
@click.option("--mode", type=click.Choice(["prototype", "production"]), default=None)
@click.option("--plugin-root", "plugin_root", default=None)
@click.option("--project-dir", "project_dir", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
@click.pass_context
def review_command(
    ctx: click.Context,
    review_type: str,
    step_id: int | None,
    mode: str | None,
    plugin_root: str | None,
    project_dir: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(project_dir, config_value)
    kind = ReviewKind(review_type)
    if kind is ReviewKind.STEP and step_id is None:
        raise click.UsageError("--step-id is required for step-review")
    session_dir = _require_session(runtime.project_root)
    request = ReviewRequest(
        kind=kind,
        project_root=runtime.project_root,
        session_dir=session_dir,
        step=step_id if kind is ReviewKind.STEP else None,
    )
    invoker = _build_invoker(runtime, mode, plugin_root)
    try:
        result = asyncio.run(_run_cancellable(invoker, request))
    except (asyncio.CancelledError, KeyboardInterrupt):
        click.echo("Review cancelled.", err=True)
        ctx.exit(2)
    except AipilotError as exc:
        raise click.ClickException(str(exc)) from exc

    if result.exit_code != 0 and result.message:
        click.echo(result.message, err=True)
    ctx.exit(result.exit_code)


@cli.command("validate")
@click.option("--type", "review_type", type=click.Choice(VALIDATE_TYPES), required=True)
@click.option("--step-id", "step_id", type=click.IntRange(min=1), default=None)
@click.option("--project-dir", "project_dir", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
@click.pass_context
def validate_command(
    ctx: click.Context,
    review_type: str,
    step_id: int | None,
    project_dir: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(project_dir, config_value)
    kind = ReviewKind(review_type)
    if kind is ReviewKind.STEP and step_id is None:
        raise click.UsageError("--step-id is required for step-review")
    session_dir = _require_session(runtime.project_root)
    artifact = {
        ReviewKind.PLAN: ArtifactKind.PLAN_REVIEW,
        ReviewKind.STEP: ArtifactKind.STEP_REVIEW,
        ReviewKind.FINAL: ArtifactKind.CODE_REVIEW,
        ReviewKind.IMPLEMENTATION: ArtifactKind.IMPL_RESULT,
    }[kind]
    path = session_dir / artifact.filename(step_id if artifact.per_step else None)
    result = validate_artifact(
        path, kind, min_summary_length=runtime.config.gate.min_summary_length
    )
    _echo_json(result.to_dict())
    ctx.exit(0 if result.valid else 1)


@cli.command("aggregate")
@click.option("--project-dir", "project_dir", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
def aggregate_command(project_dir: str | None, config_value: str) -> None:
    runtime = _load_runtime(project_dir, config_value)
    session_dir = _require_session(runtime.project_root)
    aggregated = write_implementation_result(session_dir, runtime.config.aggregate.max_steps)
    if aggregated is None:
        raise click.ClickException(f"No step results to aggregate in {session_dir}")
    _echo_json({"valid": True, "status": aggregated["status"]})


@cli.command("phase")
@click.option("--project-dir", "project_dir", default=None)
def phase_command(project_dir: str | None) -> None:
    """Prompt-submit hook: print pipeline guidance for the active session."""
    project_root = Path(project_dir).resolve() if project_dir else project_root_from_env()
    try:
        guidance = build_guidance(project_root, session_id_from_env())
    except SessionResolutionError as exc:
        click.echo(f"aipilot: {exc}", err=True)
        return
    if guidance is None:
        return
    _echo_json(
        {
            "hookSpecificOutput": {
                "hookEventName": "UserPromptSubmit",
                "additionalContext": guidance,
            }
        }
    )


@cli.command("gate")
@click.option("--project-dir", "project_dir", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
def gate_command(project_dir: str | None, config_value: str) -> None:
    """Stop hook: block when a freshly written artifact is malformed."""
    try:
        runtime = _load_runtime(project_dir, config_value)
        session_dir = resolve_session_dir(runtime.project_root, session_id_from_env())
    except (click.ClickException, SessionResolutionError) as exc:
        message = exc.format_message() if isinstance(exc, click.ClickException) else str(exc)
        click.echo(f"aipilot: {message}", err=True)
        return
    if session_dir is None:
        return
    gate = ReviewGate(
        recent_window_seconds=float(runtime.config.gate.recent_window_seconds),
        min_summary_length=runtime.config.gate.min_summary_length,
    )
    decision = gate.check(session_dir)
    if decision is not None:
        _echo_json(decision.to_dict())


@cli.command("preflight")
@click.option("--project-dir", "project_dir", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
@click.pass_context
def preflight_command(ctx: click.Context, project_dir: str | None, config_value: str) -> None:
    runtime = _load_runtime(project_dir, config_value)
    payload = preflight(runtime.config.reviewer.binary)
    _echo_json(payload)
    ctx.exit(0 if payload["ok"] else 1)
