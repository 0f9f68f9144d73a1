from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from taskgate.backends import (
    ReviewerBackend,
    ReviewerError,
    ReviewerTimeoutError,
    ReviewerUnavailableError,
    build_backend,
)
from taskgate.backends.command import FORCED_ENV
from taskgate.config import TaskgateConfig
from taskgate.process import CommandOutcome, last_line, run_command, truncate_tail
from taskgate.prompts import resolve_prompt
from taskgate.reviewer import Reviewer, wrap_prompt
from taskgate.state.signals import SignalStore
from taskgate.tasks import PromptType, RunContext, TaskKind, TaskResult, TaskSpec
from taskgate.variables import (
    SESSION_VARIABLES,
    VariableResolver,
    expand_template,
    template_variables,
    unknown_variables,
)

logger = logging.getLogger(__name__)

ENV_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
SCRIPT_DIR_PREFIXES = ("./script/", "./scripts/")

BackendFactory = Callable[[TaskSpec, RunContext], ReviewerBackend]
EventHook = Callable[[dict[str, Any]], None]


class EnvParseError(ValueError):
    """Raised when env-task output is neither KEY=VALUE lines nor a flat JSON object."""


def parse_env_output(stdout: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` / ``export KEY=VALUE`` lines or a flat JSON string map."""
    text = (stdout or "").strip()
    if not text:
        return {}

    if text.startswith("{") or text.startswith("["):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise EnvParseError(f"Failed to parse JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise EnvParseError("JSON output must be an object with string values")
        variables: dict[str, str] = {}
        for key, value in parsed.items():
            if not isinstance(value, str):
                raise EnvParseError(
                    f'JSON value for "{key}" must be a string, got {type(value).__name__}'
                )
            variables[str(key)] = value
        return variables

    variables = {}
    for index, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):]
        key, separator, value = line.partition("=")
        if not separator:
            raise EnvParseError(f'Line {index}: no "=" found in "{raw_line.strip()}"')
        key = key.strip()
        if not ENV_KEY_PATTERN.match(key):
            raise EnvParseError(f'Line {index}: invalid variable name "{key}"')
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
            value = value[1:-1]
        variables[key] = value
    return variables


class TaskRunner:
    """Executes a single task and always returns a ``TaskResult``.

    Internal failures become failing results with a diagnostic reason. Only
    cancellation propagates, after the task's process group has been signalled.
    """

    def __init__(
        self,
        config: TaskgateConfig,
        *,
        signals: SignalStore | None = None,
        backend_factory: BackendFactory | None = None,
        event_hook: EventHook | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config = config
        self.signals = signals
        self.backend_factory = backend_factory or self._default_backend
        self.event_hook = event_hook
        self.environ = dict(os.environ if environ is None else environ)
        self._handlers: dict[
            TaskKind,
            Callable[[TaskSpec, RunContext, VariableResolver], Awaitable[TaskResult]],
        ] = {
            TaskKind.SCRIPT: self._run_script,
            TaskKind.ENV: self._run_env,
            TaskKind.AGENT: self._run_agent,
        }

    def _default_backend(self, task: TaskSpec, context: RunContext) -> ReviewerBackend:
        reviewer = self.config.reviewer
        return build_backend(
            task.command or reviewer.command,
            context.project_root,
            context.env,
            max_turns=reviewer.max_agent_turns,
            model=task.model or reviewer.model,
        )

    def _task_hook(self, task: TaskSpec) -> EventHook | None:
        hook = self.event_hook
        if hook is None:
            return None
        return lambda payload: hook({**payload, "task": task.name})

    def timeout_seconds(self, task: TaskSpec) -> float:
        if task.timeout_ms is not None:
            return task.timeout_ms / 1000
        defaults = {
            TaskKind.SCRIPT: self.config.runner.script_timeout_ms,
            TaskKind.ENV: self.config.runner.env_timeout_ms,
            TaskKind.AGENT: self.config.runner.agent_timeout_ms,
        }
        return defaults[task.kind] / 1000

    def child_env(self, context: RunContext) -> dict[str, str]:
        return {**self.environ, **context.env, **FORCED_ENV}

    async def run(
        self,
        task: TaskSpec,
        context: RunContext,
        variables: VariableResolver | None = None,
    ) -> TaskResult:
        resolver = variables or VariableResolver(context, self.signals)
        try:
            return await self._handlers[task.kind](task, context, resolver)
        except Exception as exc:
            logger.exception("Task %s crashed", task.name)
            return TaskResult.failure(task, f"{task.name} crashed: {exc}")

    def _missing_script(self, task: TaskSpec, context: RunContext) -> TaskResult | None:
        command = task.command.strip()
        if not command.startswith(SCRIPT_DIR_PREFIXES):
            return None
        script = command.split(maxsplit=1)[0]
        if (context.project_root / script[2:]).exists():
            return None
        return TaskResult.failure(task, f"Script not found: {script}")

    async def _execute(self, task: TaskSpec, context: RunContext) -> CommandOutcome | TaskResult:
        missing = self._missing_script(task, context)
        if missing is not None:
            return missing
        timeout = self.timeout_seconds(task)
        try:
            outcome = await run_command(
                task.command,
                cwd=context.project_root,
                env=self.child_env(context),
                timeout_seconds=timeout,
                max_chars=self.config.runner.max_output_chars,
            )
        except OSError as exc:
            return TaskResult.failure(task, f"failed to start {task.command}: {exc}")
        if outcome.timed_out:
            return TaskResult.failure(
                task,
                f"{task.command} timed out after {timeout:.1f}s",
                duration_ms=outcome.duration_ms,
            )
        return outcome

    async def _run_script(
        self,
        task: TaskSpec,
        context: RunContext,
        variables: VariableResolver,
    ) -> TaskResult:
        outcome = await self._execute(task, context)
        if isinstance(outcome, TaskResult):
            return outcome

        output = truncate_tail(outcome.combined, self.config.runner.max_output_chars)
        if output:
            context.test_output = output
            variables.invalidate("test_output")
        seconds = outcome.duration_ms / 1000
        if outcome.exit_code == 0:
            return TaskResult(
                task_name=task.name,
                passed=True,
                reason=f"{task.command} passed ({seconds:.1f}s)",
                duration_ms=outcome.duration_ms,
                exit_code=0,
                output=output,
                mode=task.mode,
            )
        reason = f"{task.command} failed (exit {outcome.exit_code}, {seconds:.1f}s)"
        summary = last_line(output)
        if summary:
            reason = f"{reason}: {summary}"
        return TaskResult.failure(
            task,
            reason,
            duration_ms=outcome.duration_ms,
            output=output,
            exit_code=outcome.exit_code,
        )

    async def _run_env(
        self,
        task: TaskSpec,
        context: RunContext,
        variables: VariableResolver,
    ) -> TaskResult:
        outcome = await self._execute(task, context)
        if isinstance(outcome, TaskResult):
            return outcome

        output = truncate_tail(outcome.combined, self.config.runner.max_output_chars)
        if outcome.exit_code != 0:
            reason = f"{task.command} failed (exit {outcome.exit_code})"
            summary = last_line(output)
            if summary:
                reason = f"{reason}: {summary}"
            return TaskResult.failure(
                task,
                reason,
                duration_ms=outcome.duration_ms,
                output=output,
                exit_code=outcome.exit_code,
            )
        try:
            exported = parse_env_output(outcome.stdout)
        except EnvParseError as exc:
            return TaskResult.failure(
                task,
                f"failed to parse env output: {exc}",
                duration_ms=outcome.duration_ms,
                output=output,
                exit_code=0,
            )
        return TaskResult(
            task_name=task.name,
            passed=True,
            reason=f"exported {len(exported)} variable(s)",
            duration_ms=outcome.duration_ms,
            exit_code=0,
            output=output,
            mode=task.mode,
            env=exported,
        )

    async def _run_agent(
        self,
        task: TaskSpec,
        context: RunContext,
        variables: VariableResolver,
    ) -> TaskResult:
        template = task.prompt
        if task.prompt_type is PromptType.REFERENCE:
            template = resolve_prompt(task.prompt)
            if template is None:
                return TaskResult.failure(task, f'unknown prompt reference "{task.prompt}"')

        unknown = unknown_variables(template, variables)
        if unknown:
            names = "}}, {{".join(unknown)
            return TaskResult.failure(task, f"unknown template variable(s): {{{{{names}}}}}")
        if not context.session_id:
            needs_session = sorted(set(template_variables(template)) & SESSION_VARIABLES)
            if needs_session:
                names = "}}, {{".join(needs_session)
                return TaskResult.failure(
                    task, f"{{{{{names}}}}} require a session but no session id is available"
                )

        user_prompt = expand_template(template, variables)
        if not user_prompt.strip():
            return TaskResult(
                task_name=task.name,
                passed=True,
                reason="empty prompt, skipped",
                mode=task.mode,
                skipped=True,
            )

        reviewer = Reviewer(
            self.backend_factory(task, context),
            timeout_seconds=self.timeout_seconds(task),
            event_hook=self._task_hook(task),
        )
        try:
            verdict = await reviewer.review(wrap_prompt(user_prompt))
        except ReviewerUnavailableError as exc:
            return TaskResult.failure(task, f"reviewer binary not found: {exc.binary}")
        except ReviewerTimeoutError as exc:
            return TaskResult.failure(task, str(exc))
        except ReviewerError as exc:
            return TaskResult.failure(task, str(exc), exit_code=exc.exit_code)

        if verdict.ambiguous:
            result = TaskResult.failure(task, verdict.reason or "unparseable reviewer verdict")
            result.ambiguous = True
            return result
        if not verdict.passed:
            return TaskResult.failure(task, verdict.reason or "reviewer failed the change")
        return TaskResult(
            task_name=task.name,
            passed=True,
            reason=verdict.reason or f"{task.name} passed review",
            mode=task.mode,
        )
