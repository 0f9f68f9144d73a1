from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import Callable, Mapping
from enum import Enum
from pathlib import Path
from typing import Any

from taskgate.config import TaskgateConfig
from taskgate.matcher import matches
from taskgate.process import spawn_detached
from taskgate.runner import TaskRunner
from taskgate.sources import latest_mtime
from taskgate.state import AsyncResultStore, RunCache, SignalStore, StateError
from taskgate.state.files import write_json_atomic
from taskgate.state.review_log import result_event
from taskgate.tasks import (
    AllPassed,
    Failed,
    Outcome,
    PendingAsyncOnly,
    RunContext,
    TaskMode,
    TaskResult,
    TaskSpec,
)
from taskgate.variables import VariableResolver

logger = logging.getLogger(__name__)

CACHED_PASS_REASON = "cached pass (no code changes)"
CACHED_FAIL_REASON = "cached failure (no code changes since the last run)"

Spawner = Callable[..., int]


class PlanState(str, Enum):
    IDLE = "idle"
    HARVEST_ASYNC = "harvest_async"
    MATCH_AND_CACHE = "match_and_cache"
    RUN_SERIAL = "run_serial"
    RUN_PARALLEL = "run_parallel"
    REGISTER_ASYNC = "register_async"
    DONE = "done"


class Scheduler:
    """Turns one invocation's task list into an ``Outcome``.

    Prior async results are harvested first, then matched tasks run serially,
    then in parallel, then async tasks are launched as detached workers. The
    first failure reported wins in that order.
    """

    def __init__(
        self,
        config: TaskgateConfig,
        *,
        home: Path | None = None,
        runner: TaskRunner | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
        environ: Mapping[str, str] | None = None,
        spawner: Spawner | None = None,
    ) -> None:
        self.config = config
        self.home = home or config.state_home()
        self.environ = dict(os.environ if environ is None else environ)
        self.signals = SignalStore(self.home)
        self.async_results = AsyncResultStore(self.home)
        self.event_hook = event_hook
        self.runner = runner or TaskRunner(
            config,
            signals=self.signals,
            event_hook=self._emit,
            environ=self.environ,
        )
        self.spawner = spawner or spawn_detached
        self.state = PlanState.IDLE
        self._latest_mtime: float | None = None

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is None:
            return
        try:
            self.event_hook(payload)
        except Exception as exc:
            logger.debug("event hook failed: %s", exc)

    def _emit_task(
        self,
        event: str,
        task_name: str,
        context: RunContext,
        result: TaskResult | None = None,
        **extra: Any,
    ) -> None:
        payload: dict[str, Any] = {"event": event, "task": task_name, "hook_event": context.event}
        if result is not None:
            payload.update(
                {
                    "reason": result.reason,
                    "duration_ms": result.duration_ms,
                    "mode": result.mode.value,
                }
            )
        payload.update(extra)
        self._emit(payload)

    def _transition(self, state: PlanState) -> None:
        logger.debug("plan state %s -> %s", self.state.value, state.value)
        self.state = state

    def start_session(self, session_id: str | None) -> bool:
        """Forget any async results left over from a previous run of ``session_id``."""
        try:
            cleared = self.async_results.clear_session(session_id)
        except StateError as exc:
            logger.warning("Cannot clear async results for %s: %s", session_id, exc)
            return False
        if cleared:
            logger.info("Cleared leftover async results for session %s", session_id)
        return cleared

    def run_plan(self, tasks: list[TaskSpec], context: RunContext) -> Outcome:
        return asyncio.run(self.arun_plan(tasks, context))

    async def arun_plan(self, tasks: list[TaskSpec], context: RunContext) -> Outcome:
        self._latest_mtime = None
        try:
            outcome = await self._run_plan(tasks, context)
        except Exception as exc:
            logger.exception("Plan crashed")
            outcome = Failed(
                task_name="taskgate",
                reason=f"internal error: {exc}",
                mode=TaskMode.SERIAL,
            )
        self._transition(PlanState.DONE)
        self._emit(
            {
                "event": "plan_done",
                "hook_event": context.event,
                "passed": outcome.passed,
                "outcome": type(outcome).__name__,
            }
        )
        return outcome

    async def _run_plan(self, tasks: list[TaskSpec], context: RunContext) -> Outcome:
        results: list[TaskResult] = []

        self._transition(PlanState.HARVEST_ASYNC)
        for result in self._harvest(context):
            results.append(result)
            if not result.passed:
                return Failed(
                    task_name=result.task_name,
                    reason=result.reason,
                    mode=TaskMode.ASYNC,
                    results=results,
                    harvested=True,
                    ambiguous=result.ambiguous,
                )

        self._transition(PlanState.MATCH_AND_CACHE)
        variables = VariableResolver(context, self.signals)
        selected = [
            task
            for task in tasks
            if matches(
                task.when,
                context,
                signals=self.signals,
                variables=variables,
                environ=self.environ,
            )
        ]
        skipped = [task.name for task in tasks if task not in selected]
        if skipped:
            logger.debug("Tasks not applicable: %s", ", ".join(skipped))

        serial = [task for task in selected if task.mode is TaskMode.SERIAL]
        parallel = [task for task in selected if task.mode is TaskMode.PARALLEL]
        detached = [task for task in selected if task.mode is TaskMode.ASYNC]
        if detached and not context.session_id:
            # Nowhere to persist a detached result; verify in the foreground instead.
            logger.warning(
                "No session id; running async task(s) in the foreground: %s",
                ", ".join(task.name for task in detached),
            )
            serial.extend(detached)
            detached = []

        self._transition(PlanState.RUN_SERIAL)
        for task in serial:
            result = await self._run_task(task, context, variables)
            results.append(result)
            if not result.passed:
                return self._failed(task, result, results)
            context.env.update(result.env)

        self._transition(PlanState.RUN_PARALLEL)
        parallel_results, failure = await self._run_parallel(parallel, context, variables)
        results.extend(parallel_results)
        if failure is not None:
            return self._failed(failure[0], failure[1], results)
        for result in parallel_results:
            context.env.update(result.env)

        self._transition(PlanState.REGISTER_ASYNC)
        launched: list[str] = []
        for task in detached:
            launch_failure = self._register_async(task, context)
            if launch_failure is not None:
                results.append(launch_failure)
                return self._failed(task, launch_failure, results)
            launched.append(task.name)

        if any(task.signal_gated for task in serial + parallel):
            self._clear_signal(context)

        pending = list(launched)
        for name in self._still_pending(context):
            if name not in pending:
                pending.append(name)
        if pending:
            return PendingAsyncOnly(pending=pending, results=results)
        return AllPassed(results=results)

    def _failed(self, task: TaskSpec, result: TaskResult, results: list[TaskResult]) -> Failed:
        return Failed(
            task_name=task.name,
            reason=result.reason,
            mode=task.mode,
            results=results,
            ambiguous=result.ambiguous,
        )

    def _harvest(self, context: RunContext) -> list[TaskResult]:
        try:
            harvested = self.async_results.harvest(context.session_id)
        except StateError as exc:
            logger.warning("Async harvest failed: %s", exc)
            return []
        for result in harvested:
            self._apply_verdict_policy(result)
            self._emit_task("async_harvested", result.task_name, context, result)
        return harvested

    def _still_pending(self, context: RunContext) -> list[str]:
        try:
            return self.async_results.pending(context.session_id)
        except StateError as exc:
            logger.warning("Cannot list pending async tasks: %s", exc)
            return []

    def _apply_verdict_policy(self, result: TaskResult) -> None:
        if result.ambiguous and self.config.reviewer.ambiguous_verdict == "pass":
            result.passed = True
            result.reason = f"ambiguous verdict accepted: {result.reason}"

    def _cache(self, context: RunContext) -> RunCache:
        return RunCache(self.config.cache_path(context.project_root))

    def _sources_mtime(self, context: RunContext) -> float:
        if self._latest_mtime is None:
            self._latest_mtime = latest_mtime(context.project_root, context.sources or None)
        return self._latest_mtime

    def _cached_result(self, task: TaskSpec, context: RunContext) -> TaskResult | None:
        if not (self.config.cache.enabled and task.cacheable):
            return None
        try:
            entry = self._cache(context).get(task.name)
        except StateError as exc:
            logger.warning("Run cache unreadable, running %s: %s", task.name, exc)
            return None
        if entry is None or not entry.is_fresh(self._sources_mtime(context)):
            return None
        return TaskResult(
            task_name=task.name,
            passed=entry.passed,
            reason=CACHED_PASS_REASON if entry.passed else CACHED_FAIL_REASON,
            mode=task.mode,
            cached=True,
        )

    def _record(self, task: TaskSpec, result: TaskResult, context: RunContext) -> None:
        if not (self.config.cache.enabled and task.cacheable):
            return
        if result.ambiguous or result.skipped:
            return
        try:
            self._cache(context).record(task.name, result.passed)
        except StateError as exc:
            logger.warning("Cannot record %s in the run cache: %s", task.name, exc)

    async def _run_task(
        self,
        task: TaskSpec,
        context: RunContext,
        variables: VariableResolver,
    ) -> TaskResult:
        cached = self._cached_result(task, context)
        if cached is not None:
            self._emit_task("task_cached", task.name, context, cached)
            return cached

        self._emit_task("task_running", task.name, context, mode=task.mode.value)
        result = await self.runner.run(task, context, variables)
        self._apply_verdict_policy(result)
        self._record(task, result, context)

        self._emit_task(result_event(result), task.name, context, result)
        return result

    async def _run_parallel(
        self,
        tasks: list[TaskSpec],
        context: RunContext,
        variables: VariableResolver,
    ) -> tuple[list[TaskResult], tuple[TaskSpec, TaskResult] | None]:
        if not tasks:
            return [], None

        running = {
            asyncio.create_task(self._run_task(task, context, variables)): task for task in tasks
        }
        results: list[TaskResult] = []
        failure: tuple[TaskSpec, TaskResult] | None = None
        try:
            while running and failure is None:
                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for future in done:
                    task = running.pop(future)
                    result = future.result()
                    results.append(result)
                    if not result.passed and failure is None:
                        failure = (task, result)
        finally:
            for future, task in running.items():
                future.cancel()
                self._emit_task(
                    "parallel_cancelled",
                    task.name,
                    context,
                    reason="cancelled after a sibling failed",
                )
            if running:
                await asyncio.gather(*running, return_exceptions=True)
        return results, failure

    def _register_async(self, task: TaskSpec, context: RunContext) -> TaskResult | None:
        """Launch ``task`` as a detached worker; a launch problem comes back as a failure."""
        session_id = context.session_id
        assert session_id is not None
        if task.name in self._still_pending(context):
            logger.info("Async task %s is still running; not launching another", task.name)
            return None
        try:
            self.async_results.mark_pending(session_id, task, os.getpid())
            context_path = self.async_results.context_path(session_id, task.name)
            write_json_atomic(
                context_path,
                {
                    "home": str(self.home),
                    "task": task.to_dict(),
                    "context": context.to_dict(),
                    "config": self.config.to_dict(),
                },
            )
            pid = self.spawner(
                [sys.executable, "-m", "taskgate.worker", str(context_path)],
                cwd=context.project_root,
                env=self.runner.child_env(context),
                log_path=self.async_results.log_path(session_id, task.name),
            )
        except (OSError, StateError) as exc:
            logger.warning("Cannot launch async task %s: %s", task.name, exc)
            try:
                self.async_results.discard(session_id, task.name)
            except StateError as discard_exc:
                logger.debug("Cannot discard pending marker: %s", discard_exc)
            return TaskResult.failure(task, f"failed to launch async task: {exc}")
        logger.info("Launched async task %s (pid %s)", task.name, pid)
        self._emit_task("async_spawned", task.name, context, mode=task.mode.value, pid=pid)
        return None

    def _clear_signal(self, context: RunContext) -> None:
        if not context.session_id:
            return
        try:
            self.signals.clear(context.session_id)
        except StateError as exc:
            logger.warning("Cannot clear signal for %s: %s", context.session_id, exc)
            return
        self._emit({"event": "signal_cleared", "hook_event": context.event})
