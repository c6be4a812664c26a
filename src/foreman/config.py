from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["codex", "claude", "openai"]
CommitPolicy = Literal["immediate", "confirmed"]
TrackerKind = Literal["local", "beads"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    base_branch: str = "main"
    remote: str = "origin"
    branch_prefix: str = "foreman/"


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 600.0
    claude_model: str = "claude-sonnet-4-5"
    codex_model: str = "gpt-5-codex"
    openai_model: str = "gpt-5-codex"


@dataclass(slots=True)
class AgentsConfig:
    """Role model overrides sent to the primary backend; empty uses the backend's model."""

    model: str = ""
    implementer_model: str = ""


@dataclass(slots=True)
class WorkflowConfig:
    commit_policy: CommitPolicy = "confirmed"
    verification_max_retries: int = 3
    quality_review_max_retries: int = 2
    phase_failure_retries: int = 1
    observer_enabled: bool = True
    observer_interval_seconds: float = 5.0


@dataclass(slots=True)
class DriftConfig:
    yellow_minor_max: int = 2
    yellow_max: int = 4
    red_max: int = 2
    yellow_cost: int = 1
    red_cost: int = 2
    leeway_discount: int = 1
    test_patterns: list[str] = field(
        default_factory=lambda: [
            "tests/*",
            "test/*",
            "*/tests/*",
            "*/test/*",
            "test_*",
            "*_test.*",
            "*.test.*",
            "*.spec.*",
        ]
    )
    leeway_patterns: list[str] = field(
        default_factory=lambda: [
            "*.md",
            "*.rst",
            "*.txt",
            "*.toml",
            "*.yaml",
            "*.yml",
            "*.json",
            "*.cfg",
            "*.ini",
            "docs/*",
            "*/docs/*",
        ]
    )


@dataclass(slots=True)
class TrackerConfig:
    kind: TrackerKind = "local"
    binary: str = "bd"


@dataclass(slots=True)
class LogConfig:
    path: str = ".foreman/implementation-log.md"
    archive_dir: str = ".foreman/archive"
    max_lines: int = 500
    max_bytes: int = 102400


@dataclass(slots=True)
class StateConfig:
    directory: str = ".foreman"


@dataclass(slots=True)
class ForemanConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    drift: DriftConfig = field(default_factory=DriftConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    log: LogConfig = field(default_factory=LogConfig)
    state: StateConfig = field(default_factory=StateConfig)

    SECTIONS = ("project", "backend", "agents", "workflow", "drift", "tracker", "log", "state")

    @classmethod
    def default(cls) -> ForemanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ForemanConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            drift=DriftConfig(**data.get("drift", {})),
            tracker=TrackerConfig(**data.get("tracker", {})),
            log=LogConfig(**data.get("log", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {section: asdict(getattr(self, section)) for section in self.SECTIONS}


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ForemanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ForemanConfig.SECTIONS:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ForemanConfig:
    if not path.exists():
        return ForemanConfig.default()
    return ForemanConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ForemanConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
