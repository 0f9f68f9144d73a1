from __future__ import annotations

import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Any

from taskgate.tasks import TaskResult

logger = logging.getLogger(__name__)

EVENT_STATUS = {
    "task_running": "RUNNING",
    "task_pass": "PASS",
    "task_fail": "FAIL",
    "task_cached": "SKIP",
    "task_skipped": "SKIP",
    "task_ambiguous": "CRASH",
    "async_spawned": "RUNNING",
    "async_harvested": "HARVESTED",
    "parallel_cancelled": "SKIP",
    "async_done": "DONE",
    "async_crash": "CRASH",
    "reviewer_resume": "RESUME",
}



def result_event(result: TaskResult) -> str:
    """Lifecycle event name for a finished task result."""
    if result.ambiguous and not result.passed:
        return "task_ambiguous"
    if result.skipped:
        return "task_skipped"
    return "task_pass" if result.passed else "task_fail"

class ReviewLog:
    """Append-only JSONL of task lifecycle entries, one file per session.

    Project-level runs without a session share a file keyed by a hash of the
    project root. Writes are best-effort.
    """

    def __init__(self, home: Path, project_root: Path) -> None:
        self.sessions_dir = home / "sessions"
        self.project_root = project_root

    def path(self, session_id: str | None) -> Path:
        if session_id:
            return self.sessions_dir / f"{session_id}.jsonl"
        digest = hashlib.sha256(str(self.project_root).encode("utf-8")).hexdigest()[:12]
        return self.sessions_dir / f"_project_{digest}.jsonl"

    def append(
        self,
        session_id: str | None,
        task_name: str,
        status: str,
        *,
        reason: str | None = None,
        duration_ms: int | None = None,
        event: str | None = None,
    ) -> None:
        entry: dict[str, Any] = {
            "at": int(time.time() * 1000),
            "task": task_name,
            "status": status,
            "reason": reason or None,
            "project_dir": str(self.project_root),
            "session_id": session_id or None,
        }
        if duration_ms is not None:
            entry["duration_ms"] = duration_ms
        if event:
            entry["event"] = event
        path = self.path(session_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError as exc:
            logger.debug("Review log write failed for %s: %s", path, exc)

    def entries(self, session_id: str | None) -> list[dict[str, Any]]:
        path = self.path(session_id)
        if not path.exists():
            return []
        entries: list[dict[str, Any]] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                entries.append(payload)
        return entries

    def record_event(self, session_id: str | None, event: dict[str, Any]) -> None:
        """``event_hook`` sink: map a scheduler/runner event onto a log entry."""
        status = EVENT_STATUS.get(str(event.get("event", "")))
        if status is None:
            return
        self.append(
            session_id,
            str(event.get("task", "")),
            status,
            reason=event.get("reason"),
            duration_ms=event.get("duration_ms"),
            event=event.get("hook_event"),
        )
