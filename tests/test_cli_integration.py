import json
import os
import subprocess
import time
from pathlib import Path

import pytest
from click.testing import CliRunner

from taskgate.cli import cli
from taskgate.config import HookConfig, load_config, save_config
from taskgate.state import AsyncResultStore
from taskgate.tasks import TaskMode, TaskResult, TaskSpec


def _run(cmd: list[str], cwd: Path) -> None:
    subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)


def _init_git_repo(repo_path: Path) -> None:
    _run(["git", "init"], cwd=repo_path)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo_path)
    _run(["git", "config", "user.name", "Test User"], cwd=repo_path)
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "README.md"], cwd=repo_path)
    _run(["git", "commit", "-m", "seed"], cwd=repo_path)


def _write_test_script(repo: Path, exit_code: int) -> Path:
    script = repo / "script" / "test"
    script.parent.mkdir(exist_ok=True)
    script.write_text(f"#!/bin/sh\necho 'ran tests'\nexit {exit_code}\n", encoding="utf-8")
    script.chmod(0o755)
    return script


@pytest.fixture
def repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    monkeypatch.setenv("TASKGATE_HOME", str(tmp_path / "home"))
    monkeypatch.delenv("TASKGATE_SESSION_ID", raising=False)
    monkeypatch.delenv("TASKGATE_DISABLED", raising=False)
    return repo


def test_init_writes_default_config(repo: Path, tmp_path: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(cli, ["init"])
    assert result.exit_code == 0, result.output
    assert "Initialized taskgate" in result.output
    config = load_config(repo / "taskgate.toml")
    assert config.task_entries("Stop")[0]["command"] == "./script/test"
    assert (tmp_path / "home" / "sessions").is_dir()

    again = runner.invoke(cli, ["init"])
    assert again.exit_code != 0
    assert "already exists" in again.output
    assert runner.invoke(cli, ["init", "--force"]).exit_code == 0


def test_run_pass_then_cached_then_failure(repo: Path) -> None:
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    script = _write_test_script(repo, 0)
    _run(["git", "add", "script/test", "taskgate.toml"], cwd=repo)
    _run(["git", "commit", "-m", "add tests"], cwd=repo)

    first = runner.invoke(cli, ["run", "Stop", "--session-id", "s1"])
    assert first.exit_code == 0, first.output
    payload = json.loads(first.stdout)
    assert payload["passed"] is True
    assert payload["outcome"] == "AllPassed"
    assert payload["results"][0]["cached"] is False

    second = runner.invoke(cli, ["run", "Stop", "--session-id", "s1"])
    assert second.exit_code == 0, second.output
    assert json.loads(second.stdout)["results"][0]["cached"] is True

    shown = runner.invoke(cli, ["cache", "show"])
    assert shown.exit_code == 0
    assert json.loads(shown.stdout)["tests"]["result"] == "pass"

    _write_test_script(repo, 1)
    future = time.time() + 60
    os.utime(script, (future, future))
    failed = runner.invoke(cli, ["run", "Stop", "--session-id", "s1"])
    assert failed.exit_code == 2
    payload = json.loads(failed.stdout)
    assert payload["outcome"] == "Failed"
    assert payload["task"] == "tests"
    assert payload["mode"] == "serial"
    assert "./script/test failed (exit 1" in payload["reason"]

    cleared = runner.invoke(cli, ["cache", "clear", "--task", "tests"])
    assert cleared.exit_code == 0
    assert json.loads(runner.invoke(cli, ["cache", "show"]).stdout) == {}

    log = runner.invoke(cli, ["log", "--session-id", "s1"])
    assert log.exit_code == 0
    assert "FAIL" in log.output
    assert "SKIP" in log.output


def test_run_unknown_event_passes_with_no_tasks(repo: Path) -> None:
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0

    result = runner.invoke(cli, ["run", "PreToolUse"])
    assert result.exit_code == 0
    assert json.loads(result.stdout)["outcome"] == "AllPassed"


def test_run_is_disabled_inside_taskgate_children(repo: Path, monkeypatch) -> None:
    monkeypatch.setenv("TASKGATE_DISABLED", "1")

    result = CliRunner().invoke(cli, ["run", "Stop"])
    assert result.exit_code == 0
    assert json.loads(result.stdout)["outcome"] == "Disabled"


def test_run_reports_invalid_task_config(repo: Path) -> None:
    config = load_config(repo / "taskgate.toml")
    config.hooks.append(HookConfig(event="Stop", tasks=[{"name": "broken", "kind": "magic"}]))
    save_config(repo / "taskgate.toml", config)

    result = CliRunner().invoke(cli, ["run", "Stop"])
    assert result.exit_code != 0
    assert "unsupported kind" in result.output


def test_signal_commands_and_gated_task(repo: Path) -> None:
    runner = CliRunner()
    config = load_config(repo / "taskgate.toml")
    config.hooks.append(
        HookConfig(
            event="Stop",
            tasks=[{"name": "wrap-up", "command": "true", "when": {"signal": "done"}}],
        )
    )
    save_config(repo / "taskgate.toml", config)

    missing_session = runner.invoke(cli, ["signal", "set", "done"])
    assert missing_session.exit_code != 0
    assert "session id is required" in missing_session.output

    set_result = runner.invoke(
        cli, ["signal", "set", "done", "--message", "feature complete", "--session-id", "s9"]
    )
    assert set_result.exit_code == 0
    shown = json.loads(runner.invoke(cli, ["signal", "show", "--session-id", "s9"]).stdout)
    assert shown["type"] == "done"
    assert shown["message"] == "feature complete"

    run_result = runner.invoke(cli, ["run", "Stop", "--session-id", "s9"])
    assert run_result.exit_code == 0, run_result.output
    assert json.loads(run_result.stdout)["results"][0]["task_name"] == "wrap-up"
    assert runner.invoke(cli, ["signal", "show", "--session-id", "s9"]).stdout.strip() == "null"

    runner.invoke(cli, ["signal", "set", "stuck", "--session-id", "s9"])
    assert runner.invoke(cli, ["signal", "clear", "--session-id", "s9"]).exit_code == 0
    assert runner.invoke(cli, ["signal", "show", "--session-id", "s9"]).stdout.strip() == "null"

    invalid = runner.invoke(cli, ["signal", "set", "bored", "--session-id", "s9"])
    assert invalid.exit_code != 0


def test_session_start_and_harvest(repo: Path, tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("TASKGATE_SESSION_ID", "s2")
    runner = CliRunner()
    store = AsyncResultStore(tmp_path / "home")
    task = TaskSpec(name="bg", command="true", mode=TaskMode.ASYNC)

    store.complete("s2", task, TaskResult(task_name="bg", passed=False, reason="lint errors"))
    harvested = runner.invoke(cli, ["harvest"])
    assert harvested.exit_code == 2
    payload = json.loads(harvested.stdout)
    assert payload["results"][0]["reason"] == "lint errors"
    assert json.loads(runner.invoke(cli, ["harvest"]).stdout)["results"] == []

    store.complete("s2", task, TaskResult(task_name="bg", passed=True))
    started = runner.invoke(cli, ["session-start"])
    assert started.exit_code == 0
    assert "cleared async results" in started.output
    assert store.harvest("s2") == []
