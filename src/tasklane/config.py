from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from tasklane.errors import ValidationError

DEFAULT_CONFIG_FILENAME = "tasklane.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    state_dir: str = ".tasklane"
    verify_command: str = "pytest -q"
    handoff_command: str = ""


@dataclass(slots=True)
class LogConfig:
    archive_max_entries: int = 500
    archive_age_days: int = 30
    recent_count: int = 3
    render_count: int = 10


@dataclass(slots=True)
class CheckpointConfig:
    retain: int = 10


@dataclass(slots=True)
class OrchestratorConfig:
    worker_command: str = ""
    worker_timeout_seconds: float = 900.0
    worker_retries: int = 1
    max_consecutive_blocked: int = 3
    verify: bool = True


@dataclass(slots=True)
class GraduationConfig:
    duplicate_threshold: float = 0.85


@dataclass(slots=True)
class TasklaneConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    log: LogConfig = field(default_factory=LogConfig)
    checkpoints: CheckpointConfig = field(default_factory=CheckpointConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    graduation: GraduationConfig = field(default_factory=GraduationConfig)

    @classmethod
    def default(cls) -> TasklaneConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TasklaneConfig:
        return cls(
            project=_section(ProjectConfig, "project", data),
            log=_section(LogConfig, "log", data),
            checkpoints=_section(CheckpointConfig, "checkpoints", data),
            orchestrator=_section(OrchestratorConfig, "orchestrator", data),
            graduation=_section(GraduationConfig, "graduation", data),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "state_dir": self.project.state_dir,
                "verify_command": self.project.verify_command,
                "handoff_command": self.project.handoff_command,
            },
            "log": {
                "archive_max_entries": self.log.archive_max_entries,
                "archive_age_days": self.log.archive_age_days,
                "recent_count": self.log.recent_count,
                "render_count": self.log.render_count,
            },
            "checkpoints": {
                "retain": self.checkpoints.retain,
            },
            "orchestrator": {
                "worker_command": self.orchestrator.worker_command,
                "worker_timeout_seconds": self.orchestrator.worker_timeout_seconds,
                "worker_retries": self.orchestrator.worker_retries,
                "max_consecutive_blocked": self.orchestrator.max_consecutive_blocked,
                "verify": self.orchestrator.verify,
            },
            "graduation": {
                "duplicate_threshold": self.graduation.duplicate_threshold,
            },
        }

    def state_root(self, repo_root: Path) -> Path:
        state_dir = Path(self.project.state_dir)
        if not state_dir.is_absolute():
            state_dir = repo_root / state_dir
        return state_dir.resolve()


def _section(section_cls: type, name: str, data: dict) -> Any:
    raw = data.get(name, {})
    if not isinstance(raw, dict):
        raise ValidationError(f"Config section [{name}] must be a table.")
    known = {item.name for item in fields(section_cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValidationError(f"Unknown keys in config section [{name}]: {', '.join(unknown)}")
    return section_cls(**raw)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        if rendered.endswith("."):
            rendered += "0"
        return rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TasklaneConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "log", "checkpoints", "orchestrator", "graduation"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TasklaneConfig:
    if not path.exists():
        return TasklaneConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ValidationError(f"Invalid config file {path}: {exc}") from exc
    return TasklaneConfig.from_dict(data)


def save_config(path: Path, config: TasklaneConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
