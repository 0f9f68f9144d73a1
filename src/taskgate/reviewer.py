from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from taskgate.backends import ReviewerBackend, build_backend

logger = logging.getLogger(__name__)

NO_RATIONALE = "<<Reviewer provided no rationale>>"

REVIEW_FORMAT = (
    "You are a code reviewer. Your ENTIRE response must be one of:\n"
    "- PASS\n"
    "- PASS: <brief reasoning>\n"
    "- FAIL: <one-line reason>\n\n"
    "Do not explain further. Just PASS or FAIL with a brief reason.\n\n"
)

NUDGE_PROMPT = (
    "You have used your turn budget. Stop investigating and answer now with exactly "
    "one line: PASS, or FAIL: <one-line reason>."
)


class VerdictKind(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class Verdict:
    kind: VerdictKind
    reason: str | None = None

    @property
    def passed(self) -> bool:
        return self.kind is VerdictKind.PASS

    @property
    def ambiguous(self) -> bool:
        return self.kind is VerdictKind.ERROR


def parse_verdict(output: str | None) -> Verdict:
    """Read a judge reply.

    ``PASS`` (optionally ``PASS: why``) passes; ``FAIL: why`` or ``FAIL`` followed
    by an explanatory line fails. Anything else is an ``ERROR`` verdict, never
    coerced into either.
    """
    lines = [line.strip() for line in (output or "").strip().splitlines() if line.strip()]
    if not lines:
        return Verdict(VerdictKind.ERROR, "No output from reviewer")

    first, rest = lines[0], lines[1:]
    head, separator, tail = first.partition(":")
    head = head.strip()
    if head == "PASS" and (separator or first == "PASS"):
        return Verdict(VerdictKind.PASS, tail.strip() or None)
    if head == "FAIL" and (separator or first == "FAIL"):
        reason = tail.strip() or (rest[0] if rest else "") or NO_RATIONALE
        return Verdict(VerdictKind.FAIL, reason)
    return Verdict(VerdictKind.ERROR, f"Unexpected reviewer output: {first[:200]}")


def wrap_prompt(user_prompt: str) -> str:
    return f"{REVIEW_FORMAT}{user_prompt}"


class Reviewer:
    """Runs one review: invoke the judge, resume once if it hit its turn budget, parse."""

    def __init__(
        self,
        backend: ReviewerBackend,
        *,
        timeout_seconds: float = 120.0,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.backend = backend
        self.timeout_seconds = timeout_seconds
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    async def review(self, prompt: str) -> Verdict:
        reply = await self.backend.invoke(prompt, timeout_seconds=self.timeout_seconds)
        if reply.truncated:
            if not reply.conversation_id:
                return Verdict(
                    VerdictKind.ERROR,
                    "reviewer hit its turn budget without a resumable conversation",
                )
            self._emit(
                {
                    "event": "reviewer_resume",
                    "backend": self.backend.name,
                    "conversation_id": reply.conversation_id,
                }
            )
            logger.info("Reviewer hit its turn budget; resuming %s once", reply.conversation_id)
            reply = await self.backend.resume(
                reply.conversation_id,
                NUDGE_PROMPT,
                timeout_seconds=self.timeout_seconds,
            )
        verdict = parse_verdict(reply.text)
        self._emit(
            {
                "event": "reviewer_verdict",
                "backend": self.backend.name,
                "verdict": verdict.kind.value,
                "reason": verdict.reason,
            }
        )
        return verdict


async def review(
    prompt: str,
    agent_command: str,
    *,
    working_directory: Path,
    max_turns: int | None = None,
    model: str | None = None,
    timeout_seconds: float = 120.0,
    env: dict[str, str] | None = None,
) -> Verdict:
    backend = build_backend(
        agent_command,
        working_directory,
        env,
        max_turns=max_turns,
        model=model,
    )
    return await Reviewer(backend, timeout_seconds=timeout_seconds).review(prompt)
