from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path
from typing import Any

from taskgate.process import pid_alive
from taskgate.state.files import StateError, read_json, remove_file, write_json_atomic
from taskgate.tasks import TaskMode, TaskResult, TaskSpec, safe_task_name

logger = logging.getLogger(__name__)

CONTEXT_SUFFIX = ".context.json"
LAUNCH_GRACE_SECONDS = 30.0


class AsyncResultStore:
    """One file per (session, async task): pending marker, then final result.

    The launching invocation writes the pending marker before spawning the
    worker; from then on only the worker writes the file, and only a later
    invocation's harvest deletes it.
    """

    def __init__(self, home: Path) -> None:
        self.sessions_dir = home / "sessions"

    def session_dir(self, session_id: str | None) -> Path | None:
        if not session_id:
            return None
        return self.sessions_dir / session_id / "async"

    def result_path(self, session_id: str, task_name: str) -> Path:
        directory = self.session_dir(session_id)
        if directory is None:
            raise StateError("Async results require a session id.")
        return directory / f"{safe_task_name(task_name)}.json"

    def context_path(self, session_id: str, task_name: str) -> Path:
        directory = self.session_dir(session_id)
        if directory is None:
            raise StateError("Async results require a session id.")
        return directory / f"{safe_task_name(task_name)}{CONTEXT_SUFFIX}"

    def log_path(self, session_id: str, task_name: str) -> Path:
        return self.result_path(session_id, task_name).with_suffix(".log")

    def mark_pending(self, session_id: str, task: TaskSpec, launcher_pid: int) -> Path:
        path = self.result_path(session_id, task.name)
        write_json_atomic(
            path,
            {
                "status": "pending",
                "task_name": task.name,
                "task": task.to_dict(),
                "launched_at": time.time(),
                "launcher_pid": launcher_pid,
                "pid": None,
            },
        )
        return path

    def mark_running(self, session_id: str, task_name: str, pid: int) -> None:
        path = self.result_path(session_id, task_name)
        payload = read_json(path)
        if not isinstance(payload, dict):
            payload = {"status": "pending", "task_name": task_name, "launched_at": time.time()}
        payload["pid"] = pid
        write_json_atomic(path, payload)

    def complete(self, session_id: str, task: TaskSpec, result: TaskResult) -> Path:
        path = self.result_path(session_id, task.name)
        write_json_atomic(
            path,
            {
                "status": "done",
                "task_name": task.name,
                "task": task.to_dict(),
                "result": result.to_dict(),
                "completed_at": time.time(),
            },
        )
        return path

    def discard(self, session_id: str, task_name: str) -> None:
        remove_file(self.result_path(session_id, task_name))
        remove_file(self.context_path(session_id, task_name))

    def _result_files(self, session_id: str | None) -> list[Path]:
        directory = self.session_dir(session_id)
        if directory is None or not directory.is_dir():
            return []
        return sorted(
            path
            for path in directory.glob("*.json")
            if not path.name.endswith(CONTEXT_SUFFIX) and not path.name.startswith(".")
        )

    @staticmethod
    def _is_crashed(payload: dict[str, Any]) -> bool:
        pid = payload.get("pid")
        if isinstance(pid, int):
            return not pid_alive(pid)
        launched_at = payload.get("launched_at")
        if not isinstance(launched_at, (int, float)):
            return True
        return time.time() - launched_at > LAUNCH_GRACE_SECONDS

    def pending(self, session_id: str | None) -> list[str]:
        names: list[str] = []
        for path in self._result_files(session_id):
            payload = read_json(path)
            if isinstance(payload, dict) and payload.get("status") == "pending":
                names.append(str(payload.get("task_name") or path.stem))
        return names

    def harvest(self, session_id: str | None, *, stop_on_failure: bool = True) -> list[TaskResult]:
        """Consume completed results for ``session_id``.

        Each delivered file is deleted. A pending marker whose worker is gone is
        delivered as a failure. With ``stop_on_failure`` the scan stops at the first
        failure so later results stay on disk for the next invocation.
        """
        harvested: list[TaskResult] = []
        for path in self._result_files(session_id):
            payload = read_json(path)
            if not isinstance(payload, dict):
                logger.warning("Discarding unreadable async result %s", path)
                remove_file(path)
                continue
            task_name = str(payload.get("task_name") or path.stem)
            status = payload.get("status")
            if status == "pending":
                if not self._is_crashed(payload):
                    continue
                result = TaskResult(
                    task_name=task_name,
                    passed=False,
                    reason="async task did not complete (worker exited without a result)",
                    mode=TaskMode.ASYNC,
                )
            else:
                raw_result = payload.get("result")
                if not isinstance(raw_result, dict):
                    raw_result = {
                        "task_name": task_name,
                        "passed": False,
                        "reason": "async result file is malformed",
                    }
                result = TaskResult.from_dict(raw_result)
                result.task_name = result.task_name or task_name
                result.mode = TaskMode.ASYNC
            remove_file(path)
            context_file = path.with_name(f"{path.stem}{CONTEXT_SUFFIX}")
            remove_file(context_file)
            harvested.append(result)
            logger.info(
                "Harvested async result %s (%s)", task_name, "pass" if result.passed else "fail"
            )
            if stop_on_failure and not result.passed:
                break
        return harvested

    def clear_session(self, session_id: str | None) -> bool:
        directory = self.session_dir(session_id)
        if directory is None or not directory.exists():
            return False
        try:
            shutil.rmtree(directory)
        except OSError as exc:
            raise StateError(f"Cannot clear {directory}: {exc}") from exc
        return True
