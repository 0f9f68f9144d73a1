from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from taskgate.backends.base import ReviewerReply
from taskgate.backends.command import CommandReviewerBackend

MAX_TURNS_SUBTYPE = "error_max_turns"


class ClaudeReviewerBackend(CommandReviewerBackend):
    """Claude CLI judge: turn budget, structured JSON output and conversation resume."""

    name = "claude"

    def __init__(
        self,
        command: str,
        working_directory: Path,
        env: Mapping[str, str] | None = None,
        *,
        max_turns: int | None = None,
        model: str | None = None,
    ) -> None:
        super().__init__(command, working_directory, env)
        self.max_turns = max_turns if max_turns and max_turns > 0 else None
        self.model = model or None

    @staticmethod
    def recognizes(command: str) -> bool:
        head = command.strip().split(maxsplit=1)
        return bool(head) and os.path.basename(head[0]) == "claude"

    @property
    def structured(self) -> bool:
        return self.max_turns is not None

    def _flags(self) -> list[str]:
        flags: list[str] = []
        if self.model:
            flags.extend(["--model", self.model])
        if self.max_turns is not None:
            flags.extend(["--max-turns", str(self.max_turns), "--output-format", "json"])
        return flags

    def build_command(self) -> list[str]:
        return [*self.argv, *self._flags()]

    def build_resume_command(self, conversation_id: str) -> list[str]:
        return [*self.argv, "--resume", conversation_id, *self._flags()]

    @staticmethod
    def _parse_payload(raw: str) -> dict[str, Any] | None:
        text = raw.strip()
        if not text:
            return None
        candidates = [text, *reversed(text.splitlines())]
        for candidate in candidates:
            candidate = candidate.strip()
            if not (candidate.startswith("{") and candidate.endswith("}")):
                continue
            try:
                parsed = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                return parsed
        return None

    def _reply(self, stdout: str, stderr: str) -> ReviewerReply:
        raw = stdout.strip() or stderr.strip()
        if not self.structured:
            return ReviewerReply(text=raw)
        payload = self._parse_payload(raw)
        if payload is None:
            return ReviewerReply(text=raw)
        result = payload.get("result")
        session_id = payload.get("session_id")
        return ReviewerReply(
            text=result.strip() if isinstance(result, str) else "",
            truncated=payload.get("subtype") == MAX_TURNS_SUBTYPE,
            conversation_id=session_id if isinstance(session_id, str) else None,
        )

    async def invoke(self, prompt: str, *, timeout_seconds: float) -> ReviewerReply:
        outcome = await self._execute(self.build_command(), prompt, timeout_seconds)
        return self._reply(outcome.stdout, outcome.stderr)

    async def resume(
        self,
        conversation_id: str,
        prompt: str,
        *,
        timeout_seconds: float,
    ) -> ReviewerReply:
        outcome = await self._execute(
            self.build_resume_command(conversation_id), prompt, timeout_seconds
        )
        return self._reply(outcome.stdout, outcome.stderr)
