from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from automode.models import PlanningMode

DEFAULT_CONFIG_FILENAME = "automode.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"


@dataclass(slots=True)
class ExecutionConfig:
    max_concurrency: int = 3
    poll_interval_seconds: float = 2.0
    stop_grace_seconds: float = 10.0
    use_worktrees: bool = True


@dataclass(slots=True)
class ProviderConfig:
    default_model: str = "claude-sonnet-4-5"
    claude_binary: str = "claude"
    codex_binary: str = "codex"
    max_turns: int = 50
    planning_max_turns: int = 20


@dataclass(slots=True)
class PlanningConfig:
    default_mode: PlanningMode = "skip"
    require_plan_approval: bool = False
    approval_timeout_seconds: float = 0.0


@dataclass(slots=True)
class ReviewConfig:
    require_completion_review: bool = True


@dataclass(slots=True)
class VerifyConfig:
    commands: list[str] = field(default_factory=list)
    timeout_seconds: float = 600.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    file: str = ""


@dataclass(slots=True)
class AutoModeConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    planning: PlanningConfig = field(default_factory=PlanningConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    verify: VerifyConfig = field(default_factory=VerifyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> AutoModeConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> AutoModeConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            execution=ExecutionConfig(**data.get("execution", {})),
            provider=ProviderConfig(**data.get("provider", {})),
            planning=PlanningConfig(**data.get("planning", {})),
            review=ReviewConfig(**data.get("review", {})),
            verify=VerifyConfig(**data.get("verify", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
            },
            "execution": {
                "max_concurrency": self.execution.max_concurrency,
                "poll_interval_seconds": self.execution.poll_interval_seconds,
                "stop_grace_seconds": self.execution.stop_grace_seconds,
                "use_worktrees": self.execution.use_worktrees,
            },
            "provider": {
                "default_model": self.provider.default_model,
                "claude_binary": self.provider.claude_binary,
                "codex_binary": self.provider.codex_binary,
                "max_turns": self.provider.max_turns,
                "planning_max_turns": self.provider.planning_max_turns,
            },
            "planning": {
                "default_mode": self.planning.default_mode,
                "require_plan_approval": self.planning.require_plan_approval,
                "approval_timeout_seconds": self.planning.approval_timeout_seconds,
            },
            "review": {
                "require_completion_review": self.review.require_completion_review,
            },
            "verify": {
                "commands": list(self.verify.commands),
                "timeout_seconds": self.verify.timeout_seconds,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AutoModeConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "execution", "provider", "planning", "review", "verify", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> AutoModeConfig:
    if not path.exists():
        return AutoModeConfig.default()
    return AutoModeConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: AutoModeConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
