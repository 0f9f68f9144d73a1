"""Child-process primitives shared by the task runner, reviewer backends and scheduler."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

KILL_GRACE_SECONDS = 2.0


@dataclass(slots=True)
class CommandOutcome:
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False

    @property
    def combined(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()


def truncate_tail(text: str, max_chars: int) -> str:
    """Keep the last ``max_chars`` characters, where failures usually report."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[-max_chars:]


def last_line(text: str) -> str:
    for line in reversed(text.splitlines()):
        if line.strip():
            return line.strip()
    return ""


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def signal_group(process: asyncio.subprocess.Process, sig: int = signal.SIGTERM) -> None:
    """Signal the child's whole process group; children run as group leaders."""
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            pass


async def run_command(
    command: str | list[str],
    *,
    cwd: Path,
    env: Mapping[str, str] | None = None,
    input_text: str | None = None,
    timeout_seconds: float | None = None,
    max_chars: int = 0,
) -> CommandOutcome:
    """Run ``command`` to completion in its own process group.

    A string is run through the shell, a list is exec'd directly. Exceeding the
    timeout kills the group and yields ``timed_out=True``. Cancellation signals the
    group and re-raises without waiting for the child to exit.
    """
    started = time.monotonic()
    stdin = asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL
    child_env = dict(env) if env is not None else None
    if isinstance(command, str):
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            env=child_env,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    else:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd),
            env=child_env,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )

    payload = input_text.encode("utf-8") if input_text is not None else None
    timed_out = False
    try:
        stdout_raw, stderr_raw = await asyncio.wait_for(
            process.communicate(payload), timeout=timeout_seconds
        )
    except TimeoutError:
        timed_out = True
        signal_group(process, signal.SIGKILL)
        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
        except TimeoutError:
            logger.warning("Process group %s did not exit after SIGKILL", process.pid)
        stdout_raw, stderr_raw = b"", b""
    except asyncio.CancelledError:
        signal_group(process, signal.SIGTERM)
        # Close now so the transport is not finalized after the loop has closed.
        transport = getattr(process, "_transport", None)
        if transport is not None:
            transport.close()
        raise

    duration_ms = int((time.monotonic() - started) * 1000)
    return CommandOutcome(
        exit_code=process.returncode,
        stdout=truncate_tail(stdout_raw.decode("utf-8", errors="replace"), max_chars),
        stderr=truncate_tail(stderr_raw.decode("utf-8", errors="replace"), max_chars),
        duration_ms=duration_ms,
        timed_out=timed_out,
    )


def spawn_detached(
    argv: list[str],
    *,
    cwd: Path,
    env: Mapping[str, str] | None = None,
    log_path: Path | None = None,
) -> int:
    """Start ``argv`` in a new session so it outlives this process; returns its pid.

    Standard streams are detached from ours: stdin is ``/dev/null`` and output goes
    to ``log_path`` (or ``/dev/null``).
    """
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        output = open(log_path, "ab")  # noqa: SIM115
    else:
        output = open(os.devnull, "wb")  # noqa: SIM115
    try:
        process = subprocess.Popen(
            argv,
            cwd=str(cwd),
            env=dict(env) if env is not None else None,
            stdin=subprocess.DEVNULL,
            stdout=output,
            stderr=subprocess.STDOUT,
            start_new_session=True,
            close_fds=True,
        )
    finally:
        output.close()
    logger.debug("Spawned detached pid %s: %s", process.pid, argv)
    return process.pid
