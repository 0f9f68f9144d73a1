from __future__ import annotations

import re
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from taskgate.config import ConfigError

TASK_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


class TaskKind(str, Enum):
    SCRIPT = "script"
    ENV = "env"
    AGENT = "agent"


class TaskMode(str, Enum):
    SERIAL = "serial"
    PARALLEL = "parallel"
    ASYNC = "async"


class PromptType(str, Enum):
    STRING = "string"
    REFERENCE = "reference"


def _now_ms() -> int:
    return int(time.time() * 1000)


def safe_task_name(name: str) -> str:
    """Task name reduced to characters usable in file names and cache keys."""
    return TASK_NAME_UNSAFE.sub("_", name) or "_"


@dataclass(frozen=True, slots=True)
class When:
    file_exists: str | None = None
    env_set: str | None = None
    env_not_set: str | None = None
    signal: str | None = None
    variables_present: tuple[str, ...] | None = None

    KEYS = ("file_exists", "env_set", "env_not_set", "signal", "variables_present")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> When | None:
        if not data:
            return None
        unknown = sorted(set(data) - set(cls.KEYS))
        if unknown:
            raise ConfigError(f"Unknown when condition(s): {', '.join(unknown)}")
        present = data.get("variables_present")
        if present is not None:
            if not isinstance(present, (list, tuple)) or not all(
                isinstance(item, str) for item in present
            ):
                raise ConfigError("when.variables_present must be a list of strings")
            present = tuple(present)
        return cls(
            file_exists=data.get("file_exists"),
            env_set=data.get("env_set"),
            env_not_set=data.get("env_not_set"),
            signal=data.get("signal"),
            variables_present=present,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for key in self.KEYS:
            value = getattr(self, key)
            if value is None:
                continue
            payload[key] = list(value) if isinstance(value, tuple) else value
        return payload


@dataclass(frozen=True, slots=True)
class TaskSpec:
    name: str
    kind: TaskKind = TaskKind.SCRIPT
    command: str = ""
    prompt: str = ""
    prompt_type: PromptType = PromptType.STRING
    model: str = ""
    timeout_ms: int | None = None
    mode: TaskMode = TaskMode.SERIAL
    when: When | None = None
    cache: bool = True

    @property
    def signal_gated(self) -> bool:
        return self.when is not None and self.when.signal is not None

    @property
    def cacheable(self) -> bool:
        # Env tasks exist for their output, which is never cached.
        return self.cache and self.kind is not TaskKind.ENV and self.mode is not TaskMode.ASYNC

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TaskSpec:
        name = str(data.get("name") or "").strip()
        if not name:
            raise ConfigError("Task descriptor is missing a name.")
        try:
            kind = TaskKind(str(data.get("kind", "script")))
        except ValueError as exc:
            raise ConfigError(f"Task '{name}' has unsupported kind: {data.get('kind')}") from exc
        try:
            mode = TaskMode(str(data.get("mode", "serial")))
        except ValueError as exc:
            raise ConfigError(f"Task '{name}' has unsupported mode: {data.get('mode')}") from exc
        command = str(data.get("command") or "")
        prompt = str(data.get("prompt") or "")
        try:
            prompt_type = PromptType(str(data.get("prompt_type", "string")))
        except ValueError as exc:
            raise ConfigError(
                f"Task '{name}' has unsupported prompt_type: {data.get('prompt_type')}"
            ) from exc
        model = data.get("model") or ""
        if not isinstance(model, str):
            raise ConfigError(f"Task '{name}' model must be a string.")
        if kind in {TaskKind.SCRIPT, TaskKind.ENV} and not command.strip():
            raise ConfigError(f"Task '{name}' needs a command.")
        if kind is TaskKind.AGENT and not prompt.strip():
            raise ConfigError(f"Agent task '{name}' needs a prompt.")
        timeout = data.get("timeout_ms")
        if timeout is not None:
            try:
                timeout = int(timeout)
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"Task '{name}' has invalid timeout_ms: {timeout}") from exc
            if timeout <= 0:
                raise ConfigError(f"Task '{name}' timeout_ms must be positive.")
        return cls(
            name=name,
            kind=kind,
            command=command,
            prompt=prompt,
            prompt_type=prompt_type,
            model=model,
            timeout_ms=timeout,
            mode=mode,
            when=When.from_dict(data.get("when")),
            cache=bool(data.get("cache", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
            "command": self.command,
            "prompt": self.prompt,
            "prompt_type": self.prompt_type.value,
            "model": self.model,
            "timeout_ms": self.timeout_ms,
            "mode": self.mode.value,
            "cache": self.cache,
        }
        if self.when is not None:
            payload["when"] = self.when.to_dict()
        return payload


def parse_tasks(entries: list[Mapping[str, Any]]) -> list[TaskSpec]:
    tasks = [TaskSpec.from_dict(entry) for entry in entries]
    seen: dict[str, str] = {}
    for task in tasks:
        key = safe_task_name(task.name)
        other = seen.get(key)
        if other == task.name:
            raise ConfigError(f"Duplicate task name: {task.name}")
        if other is not None:
            # Cache entries and async result files are keyed by the safe name.
            raise ConfigError(
                f"Task names '{other}' and '{task.name}' collide as '{key}'"
            )
        seen[key] = task.name
    return tasks


@dataclass(slots=True)
class TaskResult:
    task_name: str
    passed: bool
    reason: str = ""
    duration_ms: int = 0
    exit_code: int | None = None
    output: str = ""
    timestamp: int = field(default_factory=_now_ms)
    mode: TaskMode = TaskMode.SERIAL
    cached: bool = False
    skipped: bool = False
    ambiguous: bool = False
    env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def failure(
        cls,
        task: TaskSpec,
        reason: str,
        *,
        duration_ms: int = 0,
        output: str = "",
        exit_code: int | None = None,
    ) -> TaskResult:
        return cls(
            task_name=task.name,
            passed=False,
            reason=reason,
            duration_ms=duration_ms,
            exit_code=exit_code,
            output=output,
            mode=task.mode,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_name": self.task_name,
            "passed": self.passed,
            "reason": self.reason,
            "duration_ms": self.duration_ms,
            "exit_code": self.exit_code,
            "output": self.output,
            "timestamp": self.timestamp,
            "mode": self.mode.value,
            "cached": self.cached,
            "skipped": self.skipped,
            "ambiguous": self.ambiguous,
            "env": dict(self.env),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TaskResult:
        try:
            mode = TaskMode(str(data.get("mode", "serial")))
        except ValueError:
            mode = TaskMode.SERIAL
        exit_code = data.get("exit_code")
        env = data.get("env")
        return cls(
            task_name=str(data.get("task_name", "")),
            passed=bool(data.get("passed", False)),
            reason=str(data.get("reason") or ""),
            duration_ms=int(data.get("duration_ms") or 0),
            exit_code=int(exit_code) if isinstance(exit_code, int) else None,
            output=str(data.get("output") or ""),
            timestamp=int(data.get("timestamp") or 0),
            mode=mode,
            cached=bool(data.get("cached", False)),
            skipped=bool(data.get("skipped", False)),
            ambiguous=bool(data.get("ambiguous", False)),
            env={str(k): str(v) for k, v in env.items()} if isinstance(env, dict) else {},
        )


@dataclass(slots=True)
class AllPassed:
    results: list[TaskResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return True

    def describe(self) -> str:
        notes = [
            result.reason
            for result in self.results
            if result.reason and not result.cached and not result.skipped
        ]
        return "\n".join(notes) if notes else "all tasks passed"


@dataclass(slots=True)
class Failed:
    task_name: str
    reason: str
    mode: TaskMode
    results: list[TaskResult] = field(default_factory=list)
    harvested: bool = False
    ambiguous: bool = False

    @property
    def passed(self) -> bool:
        return False

    def describe(self) -> str:
        origin = "async" if self.harvested else self.mode.value
        return f"{self.task_name} ({origin}) failed: {self.reason}"


@dataclass(slots=True)
class PendingAsyncOnly:
    pending: list[str] = field(default_factory=list)
    results: list[TaskResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return True

    def describe(self) -> str:
        return "awaiting async task(s): " + ", ".join(self.pending)


Outcome = AllPassed | Failed | PendingAsyncOnly


@dataclass(slots=True)
class RunContext:
    """Everything one invocation knows about its surroundings."""

    project_root: Path
    session_id: str | None = None
    event: str = ""
    sources: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    tool_input: dict[str, Any] = field(default_factory=dict)
    test_output: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_root": str(self.project_root),
            "session_id": self.session_id,
            "event": self.event,
            "sources": list(self.sources),
            "env": dict(self.env),
            "tool_input": dict(self.tool_input),
            "test_output": self.test_output,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RunContext:
        return cls(
            project_root=Path(str(data["project_root"])),
            session_id=data.get("session_id") or None,
            event=str(data.get("event") or ""),
            sources=[str(item) for item in data.get("sources") or []],
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            tool_input=dict(data.get("tool_input") or {}),
            test_output=str(data.get("test_output") or ""),
        )
