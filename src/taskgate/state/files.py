from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class StateError(RuntimeError):
    """Raised when persistent state cannot be read or written."""


def read_json(path: Path) -> Any:
    """Whole-file read. Missing or corrupt files read as ``None``."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise StateError(f"Cannot read {path}: {exc}") from exc
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring corrupt state file %s", path)
        return None


def write_json_atomic(path: Path, payload: Any) -> None:
    """Replace ``path`` with ``payload`` via temp file + rename, never truncating in place."""
    serialized = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    except OSError as exc:
        raise StateError(f"Cannot write {path}: {exc}") from exc
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(serialized)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except OSError as exc:
        try:
            os.unlink(temp_name)
        except OSError:
            pass
        raise StateError(f"Cannot write {path}: {exc}") from exc


def remove_file(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise StateError(f"Cannot remove {path}: {exc}") from exc
    return True


@contextmanager
def state_lock(
    target: Path,
    timeout_seconds: float = 2.0,
    stale_seconds: float = 30.0,
) -> Iterator[None]:
    """Advisory lock beside ``target`` for read-modify-write cycles.

    A lock older than ``stale_seconds`` belongs to a crashed writer and is broken.
    """
    lock_file = target.with_name(f".{target.name}.lock")
    try:
        lock_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StateError(f"Cannot create {lock_file.parent}: {exc}") from exc
    start = time.monotonic()
    while True:
        try:
            fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            os.write(fd, str(os.getpid()).encode("utf-8"))
            os.close(fd)
            break
        except FileExistsError as exc:
            try:
                age = time.time() - lock_file.stat().st_mtime
            except FileNotFoundError:
                continue
            if age > stale_seconds:
                logger.warning("Breaking stale state lock %s", lock_file)
                remove_file(lock_file)
                continue
            if time.monotonic() - start > timeout_seconds:
                raise StateError(f"Timed out waiting for state lock {lock_file}.") from exc
            time.sleep(0.02)
        except OSError as exc:
            raise StateError(f"Cannot take state lock {lock_file}: {exc}") from exc

    try:
        yield
    finally:
        try:
            lock_file.unlink()
        except FileNotFoundError:
            pass
