from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
import signal
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from aipilot.review.base import ReviewerProcessError, ReviewerTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_KILL_GRACE_SECONDS = 5.0
PREFLIGHT_TIMEOUT_SECONDS = 10.0
EXIT_POLL_SECONDS = 0.05

_UUID = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"
SESSION_TOKEN_PATTERN = re.compile(rf"session[ _]id\W{{0,4}}({_UUID})", re.IGNORECASE)
SESSION_EXPIRED_PATTERN = re.compile(
    r"session\b.{0,40}\b(?:expired|not found|no longer (?:exists|available))"
    r"|(?:no|unknown) (?:rollout|conversation|session|thread) (?:found|for)"
    r"|thread not found",
    re.IGNORECASE,
)


@dataclass(slots=True)
class ProcessOutput:
    returncode: int | None
    stdout: str
    stderr: str

    @property
    def combined(self) -> str:
        return f"{self.stdout}\n{self.stderr}"


def find_codex(binary: str = "codex") -> str | None:
    candidates = [binary]
    if binary == "codex":
        candidates.extend(
            [str(Path.home() / ".local" / "bin" / "codex"), "/usr/local/bin/codex"]
        )
    for candidate in candidates:
        resolved = shutil.which(candidate)
        if resolved:
            return resolved
    return None


def preflight(binary: str = "codex") -> dict[str, Any]:
    codex_path = find_codex(binary)
    if codex_path is None:
        return {"ok": False, "error": "Codex CLI not found. Install it or add it to PATH."}
    try:
        proc = subprocess.run(
            [codex_path, "--help"],
            text=True,
            capture_output=True,
            timeout=PREFLIGHT_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        return {"ok": False, "error": f"Codex at {codex_path} not responding: {exc}"}
    if proc.returncode != 0:
        return {
            "ok": False,
            "error": f"Codex at {codex_path} exited with code {proc.returncode}",
        }
    return {"ok": True, "codex_path": codex_path}


def extract_session_token(text: str) -> str | None:
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict):
            for key in ("thread_id", "session_id"):
                value = event.get(key)
                if isinstance(value, str) and value:
                    return value
    match = SESSION_TOKEN_PATTERN.search(text)
    return match.group(1) if match else None


def is_session_expired(output: ProcessOutput) -> bool:
    return output.returncode != 0 and bool(SESSION_EXPIRED_PATTERN.search(output.combined))


class CodexRunner:
    """Runs the codex CLI non-interactively under a hard wall-clock timeout."""

    def __init__(
        self,
        binary: str = "codex",
        *,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.kill_grace_seconds = kill_grace_seconds
        self.event_hook = event_hook
        self.partial_output: ProcessOutput | None = None

    def _emit(self, payload: dict[str, Any]) -> None:
        logger.debug("codex runner event: %s", payload)
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(
        self,
        prompt: str,
        *,
        output_path: Path,
        schema_path: Path | None = None,
        session_token: str | None = None,
    ) -> list[str]:
        command = [self.binary, "exec", "--full-auto", "--skip-git-repo-check"]
        if schema_path is not None:
            command.extend(["--output-schema", str(schema_path)])
        command.extend(["-o", str(output_path)])
        if session_token:
            command.extend(["resume", session_token])
        command.append(prompt)
        return command

    @staticmethod
    async def _drain(stream: asyncio.StreamReader | None, sink: list[bytes]) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                return
            sink.append(chunk)

    @staticmethod
    async def _wait_for_exit(process: asyncio.subprocess.Process) -> int:
        # Process.wait() also waits for the pipes to close, which a lingering
        # descendant can hold open indefinitely.
        while process.returncode is None:
            await asyncio.sleep(EXIT_POLL_SECONDS)
        return process.returncode

    async def _quiesce(
        self,
        process: asyncio.subprocess.Process,
        readers: list[asyncio.Task[None]],
        timeout_seconds: float,
    ) -> bool:
        """Wait until the reviewer has exited and both pipes reached EOF."""

        async def settled() -> None:
            await self._wait_for_exit(process)
            await asyncio.wait(readers)

        try:
            await asyncio.wait_for(settled(), timeout=timeout_seconds)
        except TimeoutError:
            return False
        return True

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, signum: signal.Signals) -> None:
        try:
            os.killpg(process.pid, signum)
        except ProcessLookupError:
            pass

    async def _terminate(
        self, process: asyncio.subprocess.Process, readers: list[asyncio.Task[None]]
    ) -> None:
        self._signal_group(process, signal.SIGTERM)
        if await self._quiesce(process, readers, self.kill_grace_seconds):
            return
        logger.warning("Reviewer pid %s ignored SIGTERM, sending SIGKILL", process.pid)
        self._signal_group(process, signal.SIGKILL)
        await self._quiesce(process, readers, self.kill_grace_seconds)

    async def run(
        self,
        command: list[str],
        *,
        cwd: Path,
        timeout_seconds: float,
    ) -> ProcessOutput:
        self.partial_output = None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise ReviewerProcessError(f"Codex binary not found: {command[0]}") from exc
        except OSError as exc:
            raise ReviewerProcessError(f"Could not start codex: {exc}") from exc

        self._emit({"event": "codex_process_start", "pid": process.pid})
        stdout_chunks: list[bytes] = []
        stderr_chunks: list[bytes] = []
        readers = [
            asyncio.create_task(self._drain(process.stdout, stdout_chunks)),
            asyncio.create_task(self._drain(process.stderr, stderr_chunks)),
        ]

        def _collected() -> ProcessOutput:
            return ProcessOutput(
                returncode=process.returncode,
                stdout=b"".join(stdout_chunks).decode("utf-8", errors="replace"),
                stderr=b"".join(stderr_chunks).decode("utf-8", errors="replace"),
            )

        try:
            try:
                await asyncio.wait_for(self._wait_for_exit(process), timeout=timeout_seconds)
            except TimeoutError as exc:
                await self._terminate(process, readers)
                self.partial_output = _collected()
                raise ReviewerTimeoutError(
                    f"Codex timed out after {timeout_seconds:.0f}s",
                    stderr=self.partial_output.stderr,
                ) from exc
            except asyncio.CancelledError:
                await self._terminate(process, readers)
                self.partial_output = _collected()
                raise

            if not await self._quiesce(process, readers, self.kill_grace_seconds):
                logger.warning(
                    "Reviewer pid %s exited but its descendants hold the output pipes open, "
                    "killing its process group",
                    process.pid,
                )
                self._signal_group(process, signal.SIGKILL)
                await self._quiesce(process, readers, self.kill_grace_seconds)
        finally:
            for reader in readers:
                if not reader.done():
                    reader.cancel()

        output = _collected()
        self._emit({"event": "codex_process_exit", "exit_code": output.returncode})
        return output
