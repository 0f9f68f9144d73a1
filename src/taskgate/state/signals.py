from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskgate.state.files import StateError, read_json, state_lock, write_json_atomic

logger = logging.getLogger(__name__)

VALID_SIGNALS = ("done", "stuck", "idle")


@dataclass(frozen=True, slots=True)
class Signal:
    type: str
    message: str | None = None
    at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "message": self.message, "at": self.at}

    @classmethod
    def from_dict(cls, payload: Any) -> Signal | None:
        if not isinstance(payload, dict):
            return None
        signal_type = payload.get("type")
        if not isinstance(signal_type, str) or not signal_type:
            return None
        message = payload.get("message")
        at = payload.get("at")
        return cls(
            type=signal_type,
            message=message if isinstance(message, str) and message else None,
            at=float(at) if isinstance(at, (int, float)) else 0.0,
        )


class SessionStateFile:
    """Small per-session key/value document at ``<home>/sessions/<session>.json``."""

    def __init__(self, home: Path) -> None:
        self.sessions_dir = home / "sessions"

    def path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def load(self, session_id: str | None, key: str) -> Any:
        if not session_id:
            return None
        payload = read_json(self.path(session_id))
        if not isinstance(payload, dict):
            return None
        return payload.get(key)

    def save(self, session_id: str | None, key: str, value: Any) -> None:
        if not session_id:
            return
        path = self.path(session_id)
        with state_lock(path):
            payload = read_json(path)
            if not isinstance(payload, dict):
                payload = {}
            payload[key] = value
            write_json_atomic(path, payload)


class SignalStore:
    """At most one active signal per session, last write wins.

    Every operation is a no-op when no session id is available.
    """

    KEY = "signal"

    def __init__(self, home: Path) -> None:
        self.state = SessionStateFile(home)

    def set(self, session_id: str | None, signal_type: str, message: str | None = None) -> bool:
        if not session_id:
            return False
        if signal_type not in VALID_SIGNALS:
            raise ValueError(
                f"Unknown signal type '{signal_type}' (valid: {', '.join(VALID_SIGNALS)})"
            )
        signal = Signal(type=signal_type, message=message or None, at=time.time())
        self.state.save(session_id, self.KEY, signal.to_dict())
        logger.info("Signal %s set for session %s", signal_type, session_id)
        return True

    def get(self, session_id: str | None) -> Signal | None:
        try:
            return Signal.from_dict(self.state.load(session_id, self.KEY))
        except StateError as exc:
            logger.warning("Cannot read signal for session %s: %s", session_id, exc)
            return None

    def clear(self, session_id: str | None) -> None:
        if not session_id:
            return
        self.state.save(session_id, self.KEY, None)
        logger.info("Signal cleared for session %s", session_id)
