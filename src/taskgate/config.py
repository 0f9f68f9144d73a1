from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

AmbiguousVerdictPolicy = Literal["fail", "pass"]

DEFAULT_CONFIG_NAME = "taskgate.toml"


class ConfigError(RuntimeError):
    """Raised when configuration or task descriptors are invalid."""


@dataclass(slots=True)
class RunnerConfig:
    script_timeout_ms: int = 60000
    env_timeout_ms: int = 30000
    agent_timeout_ms: int = 120000
    max_output_chars: int = 12000


@dataclass(slots=True)
class CacheConfig:
    enabled: bool = True
    sources: list[str] = field(default_factory=list)
    file: str = ".taskgate/runs.json"


@dataclass(slots=True)
class ReviewerConfig:
    command: str = "claude -p"
    max_agent_turns: int = 10
    model: str = ""
    ambiguous_verdict: AmbiguousVerdictPolicy = "fail"


@dataclass(slots=True)
class StateConfig:
    home: str = ""


@dataclass(slots=True)
class HookConfig:
    event: str
    tasks: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class TaskgateConfig:
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    reviewer: ReviewerConfig = field(default_factory=ReviewerConfig)
    state: StateConfig = field(default_factory=StateConfig)
    hooks: list[HookConfig] = field(default_factory=list)

    @classmethod
    def default(cls) -> TaskgateConfig:
        return cls(
            hooks=[
                HookConfig(
                    event="Stop",
                    tasks=[
                        {"name": "tests", "kind": "script", "command": "./script/test"},
                    ],
                )
            ]
        )

    @classmethod
    def from_dict(cls, data: dict) -> TaskgateConfig:
        try:
            config = cls(
                runner=RunnerConfig(**data.get("runner", {})),
                cache=CacheConfig(**data.get("cache", {})),
                reviewer=ReviewerConfig(**data.get("reviewer", {})),
                state=StateConfig(**data.get("state", {})),
                hooks=[
                    HookConfig(event=str(item["event"]), tasks=list(item.get("tasks", [])))
                    for item in data.get("hooks", [])
                ],
            )
        except (TypeError, KeyError) as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc
        if config.reviewer.ambiguous_verdict not in {"fail", "pass"}:
            raise ConfigError(
                f"reviewer.ambiguous_verdict must be 'fail' or 'pass', "
                f"got {config.reviewer.ambiguous_verdict!r}"
            )
        return config

    def to_dict(self) -> dict:
        return {
            "runner": {
                "script_timeout_ms": self.runner.script_timeout_ms,
                "env_timeout_ms": self.runner.env_timeout_ms,
                "agent_timeout_ms": self.runner.agent_timeout_ms,
                "max_output_chars": self.runner.max_output_chars,
            },
            "cache": {
                "enabled": self.cache.enabled,
                "sources": list(self.cache.sources),
                "file": self.cache.file,
            },
            "reviewer": {
                "command": self.reviewer.command,
                "max_agent_turns": self.reviewer.max_agent_turns,
                "model": self.reviewer.model,
                "ambiguous_verdict": self.reviewer.ambiguous_verdict,
            },
            "state": {
                "home": self.state.home,
            },
            "hooks": [
                {"event": hook.event, "tasks": [dict(task) for task in hook.tasks]}
                for hook in self.hooks
            ],
        }

    def state_home(self) -> Path:
        if self.state.home:
            return Path(self.state.home).expanduser()
        override = os.environ.get("TASKGATE_HOME")
        if override:
            return Path(override).expanduser()
        return Path.home() / ".taskgate"

    def cache_path(self, project_root: Path) -> Path:
        path = Path(self.cache.file)
        if not path.is_absolute():
            path = project_root / path
        return path

    def task_entries(self, event: str) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        for hook in self.hooks:
            if hook.event == event:
                entries.extend(hook.tasks)
        return entries


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


def _inline_table(value: dict[str, Any]) -> str:
    items = ", ".join(f"{key} = {_toml_value(item)}" for key, item in value.items())
    return "{ " + items + " }" if items else "{}"


def dumps_toml(config: TaskgateConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["runner", "cache", "reviewer", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for hook in data["hooks"]:
        lines.append("[[hooks]]")
        lines.append(f"event = {_toml_value(hook['event'])}")
        lines.append("")
        for task in hook["tasks"]:
            lines.append("[[hooks.tasks]]")
            for key, value in task.items():
                if value is None:
                    continue
                if isinstance(value, dict):
                    lines.append(f"{key} = {_inline_table(value)}")
                else:
                    lines.append(f"{key} = {_toml_value(value)}")
            lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> TaskgateConfig:
    if not path.exists():
        return TaskgateConfig()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Cannot parse {path}: {exc}") from exc
    return TaskgateConfig.from_dict(data)


def save_config(path: Path, config: TaskgateConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
