import json
import os
import subprocess
import sys
import time
from pathlib import Path

import pytest

from taskgate.state import AsyncResultStore, ReviewLog, RunCache, SignalStore
from taskgate.state.async_results import LAUNCH_GRACE_SECONDS
from taskgate.state.files import read_json, state_lock, write_json_atomic
from taskgate.tasks import TaskMode, TaskResult, TaskSpec


def _dead_pid() -> int:
    proc = subprocess.run(
        [sys.executable, "-c", "import os; print(os.getpid())"],
        check=True,
        text=True,
        capture_output=True,
    )
    return int(proc.stdout.strip())


def test_write_json_atomic_replaces_without_leftovers(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "state.json"
    write_json_atomic(target, {"a": 1})
    write_json_atomic(target, {"a": 2})

    assert read_json(target) == {"a": 2}
    assert sorted(path.name for path in target.parent.iterdir()) == ["state.json"]


def test_read_json_treats_corrupt_file_as_missing(tmp_path: Path) -> None:
    target = tmp_path / "state.json"
    target.write_text("{not json", encoding="utf-8")

    assert read_json(target) is None
    assert read_json(tmp_path / "absent.json") is None


def test_state_lock_breaks_stale_lock(tmp_path: Path) -> None:
    target = tmp_path / "runs.json"
    lock_file = tmp_path / ".runs.json.lock"
    lock_file.write_text("12345", encoding="utf-8")
    old = time.time() - 120
    os.utime(lock_file, (old, old))

    with state_lock(target):
        assert lock_file.exists()
    assert not lock_file.exists()


def test_run_cache_roundtrip(tmp_path: Path) -> None:
    cache = RunCache(tmp_path / ".taskgate" / "runs.json")
    cache.record("tests", True, at=1700000000.5)
    cache.record("lint", False, at=1700000001.0)

    entry = cache.get("tests")
    assert entry is not None
    assert entry.at == 1700000000.5
    assert entry.passed is True
    assert cache.get("lint").passed is False
    assert cache.get("unknown") is None

    reopened = RunCache(tmp_path / ".taskgate" / "runs.json")
    assert set(reopened.entries()) == {"tests", "lint"}


def test_run_cache_freshness_and_clear(tmp_path: Path) -> None:
    cache = RunCache(tmp_path / "runs.json")
    entry = cache.record("tests", True, at=100.0)

    assert entry.is_fresh(99.0) is True
    assert entry.is_fresh(100.0) is False
    assert entry.is_fresh(0) is False

    cache.record("lint", True, at=100.0)
    cache.clear("tests")
    assert cache.get("tests") is None
    assert cache.get("lint") is not None
    cache.clear()
    assert cache.entries() == {}


def test_run_cache_keys_unsafe_names(tmp_path: Path) -> None:
    cache = RunCache(tmp_path / "runs.json")
    cache.record("type check/strict", True, at=5.0)

    payload = json.loads((tmp_path / "runs.json").read_text(encoding="utf-8"))
    assert list(payload["runs"]) == ["type_check_strict"]
    assert cache.get("type check/strict").passed is True


def test_signal_persists_across_store_instances(tmp_path: Path) -> None:
    home = tmp_path / "home"
    SignalStore(home).set("s1", "done", "finished the refactor")

    signal = SignalStore(home).get("s1")
    assert signal is not None
    assert signal.type == "done"
    assert signal.message == "finished the refactor"

    SignalStore(home).set("s1", "stuck")
    assert SignalStore(home).get("s1").type == "stuck"

    SignalStore(home).clear("s1")
    assert SignalStore(home).get("s1") is None


def test_signal_store_without_session_is_noop(tmp_path: Path) -> None:
    store = SignalStore(tmp_path)

    assert store.set(None, "done") is False
    assert store.get(None) is None
    store.clear(None)
    assert not (tmp_path / "sessions").exists()


def test_signal_store_rejects_unknown_type(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="Unknown signal type"):
        SignalStore(tmp_path).set("s1", "bored")


def test_harvest_returns_result_once_and_deletes_file(tmp_path: Path) -> None:
    store = AsyncResultStore(tmp_path)
    task = TaskSpec(name="review", command="true", mode=TaskMode.ASYNC)
    store.mark_pending("s1", task, os.getpid())
    path = store.complete(
        "s1", task, TaskResult(task_name="review", passed=True, reason="looks fine")
    )

    first = store.harvest("s1")
    assert [(result.task_name, result.passed) for result in first] == [("review", True)]
    assert first[0].mode is TaskMode.ASYNC
    assert not path.exists()
    assert store.harvest("s1") == []


def test_harvest_leaves_live_pending_marker(tmp_path: Path) -> None:
    store = AsyncResultStore(tmp_path)
    task = TaskSpec(name="slow", command="sleep 1", mode=TaskMode.ASYNC)
    store.mark_pending("s1", task, os.getpid())
    store.mark_running("s1", "slow", os.getpid())

    assert store.harvest("s1") == []
    assert store.pending("s1") == ["slow"]


def test_harvest_reports_dead_worker_as_failure(tmp_path: Path) -> None:
    store = AsyncResultStore(tmp_path)
    task = TaskSpec(name="crashy", command="true", mode=TaskMode.ASYNC)
    store.mark_pending("s1", task, os.getpid())
    store.mark_running("s1", "crashy", _dead_pid())

    results = store.harvest("s1")
    assert len(results) == 1
    assert results[0].passed is False
    assert "did not complete" in results[0].reason
    assert store.pending("s1") == []


def test_harvest_reports_never_started_worker_after_grace(tmp_path: Path) -> None:
    store = AsyncResultStore(tmp_path)
    task = TaskSpec(name="orphan", command="true", mode=TaskMode.ASYNC)
    path = store.mark_pending("s1", task, os.getpid())
    payload = read_json(path)
    payload["launched_at"] = time.time() - LAUNCH_GRACE_SECONDS - 5
    write_json_atomic(path, payload)

    results = store.harvest("s1")
    assert [result.passed for result in results] == [False]


def test_harvest_stops_at_first_failure(tmp_path: Path) -> None:
    store = AsyncResultStore(tmp_path)
    for name, passed in [("a-check", False), ("b-check", True)]:
        task = TaskSpec(name=name, command="true", mode=TaskMode.ASYNC)
        store.complete("s1", task, TaskResult(task_name=name, passed=passed))

    first = store.harvest("s1")
    assert [result.task_name for result in first] == ["a-check"]
    second = store.harvest("s1")
    assert [result.task_name for result in second] == ["b-check"]


def test_async_store_without_session_is_noop(tmp_path: Path) -> None:
    store = AsyncResultStore(tmp_path)

    assert store.harvest(None) == []
    assert store.pending(None) == []
    assert store.clear_session(None) is False


def test_clear_session_removes_leftovers(tmp_path: Path) -> None:
    store = AsyncResultStore(tmp_path)
    task = TaskSpec(name="review", command="true", mode=TaskMode.ASYNC)
    store.complete("s1", task, TaskResult(task_name="review", passed=False))

    assert store.clear_session("s1") is True
    assert store.harvest("s1") == []


def test_review_log_records_mapped_events(tmp_path: Path) -> None:
    log = ReviewLog(tmp_path / "home", tmp_path)
    log.record_event("s1", {"event": "task_running", "task": "tests", "hook_event": "Stop"})
    log.record_event(
        "s1", {"event": "task_fail", "task": "tests", "reason": "exit 1", "duration_ms": 12}
    )
    log.record_event("s1", {"event": "reviewer_resume", "task": "tests"})

    entries = log.entries("s1")
    assert [entry["status"] for entry in entries] == ["RUNNING", "FAIL", "RESUME"]
    assert entries[0]["event"] == "Stop"
    assert entries[1]["reason"] == "exit 1"
    assert entries[1]["duration_ms"] == 12


def test_review_log_without_session_uses_project_file(tmp_path: Path) -> None:
    log = ReviewLog(tmp_path / "home", tmp_path)
    log.append(None, "lint", "PASS")

    assert log.path(None).name.startswith("_project_")
    assert log.entries(None)[0]["task"] == "lint"
