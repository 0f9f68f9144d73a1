"""Detached async-task worker: ``python -m taskgate.worker <context-file>``.

Runs one task to completion and leaves its result for a later invocation to harvest.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path

from taskgate.config import TaskgateConfig
from taskgate.logging_config import configure_logging
from taskgate.runner import TaskRunner
from taskgate.state import AsyncResultStore, ReviewLog, SignalStore, StateError
from taskgate.state.files import read_json, remove_file
from taskgate.state.review_log import result_event
from taskgate.tasks import RunContext, TaskMode, TaskResult, TaskSpec

logger = logging.getLogger(__name__)


def run_worker(context_path: Path) -> int:
    payload = read_json(context_path)
    if not isinstance(payload, dict):
        logger.error("Worker context %s is missing or unreadable", context_path)
        return 1

    home = Path(str(payload["home"]))
    task = TaskSpec.from_dict(payload["task"])
    context = RunContext.from_dict(payload["context"])
    config = TaskgateConfig.from_dict(payload.get("config") or {})
    session_id = context.session_id
    if not session_id:
        logger.error("Worker context %s has no session id", context_path)
        return 1

    review_log = ReviewLog(home, context.project_root)

    def log_event(event: str, **fields: object) -> None:
        review_log.record_event(
            session_id, {"task": task.name, "hook_event": context.event, **fields, "event": event}
        )

    store = AsyncResultStore(home)
    store.mark_running(session_id, task.name, os.getpid())
    log_event("task_running")
    runner = TaskRunner(
        config,
        signals=SignalStore(home),
        event_hook=lambda payload: review_log.record_event(
            session_id, {"hook_event": context.event, **payload}
        ),
    )
    try:
        result = asyncio.run(runner.run(task, context))
    except BaseException as exc:
        result = TaskResult.failure(task, f"async worker interrupted: {exc!r}")
        store.complete(session_id, task, result)
        log_event("async_crash", reason=result.reason)
        raise
    result.mode = TaskMode.ASYNC
    log_event(result_event(result), reason=result.reason, duration_ms=result.duration_ms)
    log_event("async_done", reason="finished, awaiting harvest")
    store.complete(session_id, task, result)
    remove_file(context_path)
    logger.info(
        "Async task %s finished: %s", task.name, "pass" if result.passed else result.reason
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("usage: python -m taskgate.worker <context-file>", file=sys.stderr)
        return 2
    configure_logging(verbose=bool(os.environ.get("TASKGATE_VERBOSE")))
    try:
        return run_worker(Path(args[0]))
    except (StateError, KeyError, ValueError) as exc:
        logger.error("Async worker failed: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
