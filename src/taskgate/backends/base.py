from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


class ReviewerError(RuntimeError):
    """Raised when a judge process cannot produce a reply."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code


class ReviewerUnavailableError(ReviewerError):
    """Raised when the judge binary is not installed."""

    def __init__(self, binary: str, *, backend: str | None = None) -> None:
        super().__init__(f"{binary} not found", backend=backend)
        self.binary = binary


class ReviewerTimeoutError(ReviewerError):
    """Raised when the judge exceeds its timeout."""


@dataclass(slots=True)
class ReviewerReply:
    text: str
    truncated: bool = False
    conversation_id: str | None = None


class ReviewerBackend(ABC):
    name: str = "reviewer"

    @abstractmethod
    async def invoke(self, prompt: str, *, timeout_seconds: float) -> ReviewerReply:
        """Deliver ``prompt`` to a fresh judge conversation and return its reply."""

    async def resume(
        self,
        conversation_id: str,
        prompt: str,
        *,
        timeout_seconds: float,
    ) -> ReviewerReply:
        """Continue ``conversation_id``; only backends with a turn budget support it."""
        raise ReviewerError(f"{self.name} cannot resume conversations", backend=self.name)
