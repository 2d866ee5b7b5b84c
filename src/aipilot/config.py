from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

ReviewMode = Literal["prototype", "production"]

PROJECT_DIR_ENV = "CLAUDE_PROJECT_DIR"
SESSION_ID_ENV = "AIPILOT_SESSION_ID"
DEFAULT_CONFIG_NAME = "aipilot.toml"


@dataclass(slots=True)
class ReviewerConfig:
    binary: str = "codex"
    timeout_seconds: float = 1200.0
    kill_grace_seconds: float = 5.0
    lock_stale_seconds: float = 300.0
    lock_dir: str = ""


@dataclass(slots=True)
class GateConfig:
    recent_window_seconds: float = 30.0
    min_summary_length: int = 10


@dataclass(slots=True)
class ReviewConfig:
    mode: ReviewMode = "production"
    plugin_root: str = ""


@dataclass(slots=True)
class AggregateConfig:
    max_steps: int = 20


@dataclass(slots=True)
class AipilotConfig:
    reviewer: ReviewerConfig
    gate: GateConfig
    review: ReviewConfig
    aggregate: AggregateConfig

    @classmethod
    def default(cls) -> AipilotConfig:
        return cls(
            reviewer=ReviewerConfig(),
            gate=GateConfig(),
            review=ReviewConfig(),
            aggregate=AggregateConfig(),
        )

    @classmethod
    def from_dict(cls, data: dict) -> AipilotConfig:
        return cls(
            reviewer=ReviewerConfig(**data.get("reviewer", {})),
            gate=GateConfig(**data.get("gate", {})),
            review=ReviewConfig(**data.get("review", {})),
            aggregate=AggregateConfig(**data.get("aggregate", {})),
        )


def load_config(path: Path) -> AipilotConfig:
    if not path.exists():
        return AipilotConfig.default()
    return AipilotConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def project_root_from_env(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    value = env.get(PROJECT_DIR_ENV, "").strip()
    return Path(value).resolve() if value else Path.cwd().resolve()


def session_id_from_env(environ: Mapping[str, str] | None = None) -> str | None:
    env = os.environ if environ is None else environ
    value = env.get(SESSION_ID_ENV)
    # An empty selector means "scan", anything else is validated by the resolver.
    return value if value else None
