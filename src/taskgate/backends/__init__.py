from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from taskgate.backends.base import (
    ReviewerBackend,
    ReviewerError,
    ReviewerReply,
    ReviewerTimeoutError,
    ReviewerUnavailableError,
)
from taskgate.backends.claude import ClaudeReviewerBackend
from taskgate.backends.command import CommandReviewerBackend


def build_backend(
    command: str,
    working_directory: Path,
    env: Mapping[str, str] | None = None,
    *,
    max_turns: int | None = None,
    model: str | None = None,
) -> CommandReviewerBackend:
    """Claude-aware backend when the binary is ``claude``, plain text otherwise."""
    if ClaudeReviewerBackend.recognizes(command):
        return ClaudeReviewerBackend(
            command, working_directory, env, max_turns=max_turns, model=model
        )
    return CommandReviewerBackend(command, working_directory, env)


__all__ = [
    "ClaudeReviewerBackend",
    "CommandReviewerBackend",
    "ReviewerBackend",
    "ReviewerError",
    "ReviewerReply",
    "ReviewerTimeoutError",
    "ReviewerUnavailableError",
    "build_backend",
]
