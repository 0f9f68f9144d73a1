from __future__ import annotations

import os
import shlex
import shutil
from collections.abc import Mapping
from pathlib import Path

from taskgate.backends.base import (
    ReviewerBackend,
    ReviewerError,
    ReviewerReply,
    ReviewerTimeoutError,
    ReviewerUnavailableError,
)
from taskgate.process import CommandOutcome, run_command

FORCED_ENV = {"TASKGATE_DISABLED": "1"}


class CommandReviewerBackend(ReviewerBackend):
    """Any judge command that reads the prompt on stdin and answers in plain text."""

    name = "command"

    def __init__(
        self,
        command: str,
        working_directory: Path,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.argv = shlex.split(command)
        if not self.argv:
            raise ReviewerError("Reviewer command is empty.", backend=self.name)
        self.working_directory = working_directory
        self.env = {**os.environ, **(env or {}), **FORCED_ENV}

    @property
    def binary(self) -> str:
        return self.argv[0]

    def available(self) -> bool:
        return shutil.which(self.binary, path=self.env.get("PATH")) is not None

    def build_command(self) -> list[str]:
        return list(self.argv)

    async def _execute(
        self,
        argv: list[str],
        prompt: str,
        timeout_seconds: float,
    ) -> CommandOutcome:
        if not self.available():
            raise ReviewerUnavailableError(self.binary, backend=self.name)
        try:
            outcome = await run_command(
                argv,
                cwd=self.working_directory,
                env=self.env,
                input_text=prompt,
                timeout_seconds=timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise ReviewerUnavailableError(self.binary, backend=self.name) from exc
        if outcome.timed_out:
            raise ReviewerTimeoutError(
                f"reviewer timed out after {timeout_seconds:.0f}s",
                backend=self.name,
            )
        if outcome.exit_code != 0:
            detail = (outcome.stderr or outcome.stdout).strip()
            prompt_info = f" [prompt: {len(prompt)} chars]"
            if detail:
                message = f"reviewer exited {outcome.exit_code}: {detail}{prompt_info}"
            else:
                message = f"reviewer exited {outcome.exit_code} with no output{prompt_info}"
            raise ReviewerError(message, backend=self.name, exit_code=outcome.exit_code)
        return outcome

    async def invoke(self, prompt: str, *, timeout_seconds: float) -> ReviewerReply:
        outcome = await self._execute(self.build_command(), prompt, timeout_seconds)
        # Some judges answer on stderr; fall back to it when stdout is empty.
        text = outcome.stdout.strip() or outcome.stderr.strip()
        return ReviewerReply(text=text)
