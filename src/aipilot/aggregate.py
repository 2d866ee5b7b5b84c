from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from aipilot.state.artifacts import ArtifactKind, ArtifactStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 20


def _dedupe(values: Iterable[Any]) -> list[Any]:
    seen: set[Any] = set()
    ordered: list[Any] = []
    for value in values:
        if not isinstance(value, str) or value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


def collect_step_results(
    session_dir: Path, max_steps: int = DEFAULT_MAX_STEPS
) -> list[dict[str, Any]]:
    """Read consecutive step results starting at step 1.

    The scan ends at the first missing number above 1, so a gap hides every
    later step. A missing or unreadable step 1 is skipped.
    """
    store = ArtifactStore(session_dir)
    results: list[dict[str, Any]] = []
    for step in range(1, max_steps + 1):
        payload = store.read_json(ArtifactKind.STEP_RESULT, step)
        if payload is not None:
            results.append(payload)
        elif step > 1:
            break
    return results


def aggregate_step_results(
    session_dir: Path, max_steps: int = DEFAULT_MAX_STEPS
) -> dict[str, Any] | None:
    results = collect_step_results(session_dir, max_steps)
    if not results:
        return None

    statuses = [item.get("status") for item in results]
    if "failed" in statuses:
        status = "failed"
    elif all(value == "complete" for value in statuses):
        status = "complete"
    else:
        status = "partial"

    files_changed = _dedupe(
        path for item in results for path in (item.get("files_changed") or [])
    )
    tests_written = _dedupe(
        path for item in results for path in (item.get("tests_written") or [])
    )

    aggregated: dict[str, Any] = {
        "status": status,
        "has_ui_changes": any(item.get("has_ui_changes") is True for item in results),
        "steps_completed": [item.get("step_id") for item in results if item.get("step_id")],
        "files_changed": files_changed,
        "tests_written": tests_written,
    }
    notes = [
        f"Step {item.get('step_id')}: {item['notes']}" for item in results if item.get("notes")
    ]
    if notes:
        aggregated["notes"] = "\n".join(notes)
    return aggregated


def write_implementation_result(
    session_dir: Path, max_steps: int = DEFAULT_MAX_STEPS
) -> dict[str, Any] | None:
    aggregated = aggregate_step_results(session_dir, max_steps)
    if aggregated is None:
        return None
    ArtifactStore(session_dir).write_json(ArtifactKind.IMPL_RESULT, aggregated)
    logger.info(
        "Aggregated %d step results into impl-result.json (%s)",
        len(aggregated["steps_completed"]),
        aggregated["status"],
    )
    return aggregated
