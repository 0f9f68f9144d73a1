from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskgate.state.files import read_json, state_lock, write_json_atomic
from taskgate.tasks import safe_task_name


@dataclass(frozen=True, slots=True)
class CacheEntry:
    at: float
    passed: bool

    def is_fresh(self, latest_mtime: float) -> bool:
        """Trusted only when recorded after the newest tracked source changed."""
        return latest_mtime > 0 and self.at > latest_mtime

    def to_dict(self) -> dict[str, Any]:
        return {"at": self.at, "result": "pass" if self.passed else "fail"}

    @classmethod
    def from_dict(cls, payload: Any) -> CacheEntry | None:
        if not isinstance(payload, dict):
            return None
        at = payload.get("at")
        if not isinstance(at, (int, float)):
            return None
        result = payload.get("result")
        if result not in {"pass", "fail"}:
            return None
        return cls(at=float(at), passed=result == "pass")


class RunCache:
    """Project-scoped record of when each task last ran and whether it passed.

    Timestamps are epoch seconds, the same unit as ``os.stat().st_mtime``.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def _load(self) -> dict[str, Any]:
        payload = read_json(self.path)
        if not isinstance(payload, dict):
            return {}
        runs = payload.get("runs")
        return runs if isinstance(runs, dict) else {}

    def entries(self) -> dict[str, CacheEntry]:
        entries: dict[str, CacheEntry] = {}
        for key, value in self._load().items():
            entry = CacheEntry.from_dict(value)
            if entry is not None:
                entries[key] = entry
        return entries

    def get(self, task_name: str) -> CacheEntry | None:
        return CacheEntry.from_dict(self._load().get(safe_task_name(task_name)))

    def record(self, task_name: str, passed: bool, at: float | None = None) -> CacheEntry:
        entry = CacheEntry(at=time.time() if at is None else at, passed=passed)
        with state_lock(self.path):
            payload = read_json(self.path)
            if not isinstance(payload, dict):
                payload = {}
            runs = payload.get("runs")
            if not isinstance(runs, dict):
                runs = {}
            runs[safe_task_name(task_name)] = entry.to_dict()
            payload["runs"] = runs
            write_json_atomic(self.path, payload)
        return entry

    def clear(self, task_name: str | None = None) -> None:
        with state_lock(self.path):
            payload = read_json(self.path)
            if not isinstance(payload, dict):
                return
            if task_name is None:
                payload["runs"] = {}
            else:
                runs = payload.get("runs")
                if isinstance(runs, dict):
                    runs.pop(safe_task_name(task_name), None)
            write_json_atomic(self.path, payload)
