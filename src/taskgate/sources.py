from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)


def _run_git(repo_root: Path, args: list[str]) -> subprocess.CompletedProcess[str] | None:
    try:
        return subprocess.run(
            ["git", "--no-pager", *args],
            cwd=repo_root,
            text=True,
            capture_output=True,
        )
    except (FileNotFoundError, NotADirectoryError) as exc:
        logger.debug("git unavailable in %s: %s", repo_root, exc)
        return None


def git_output(repo_root: Path, args: list[str]) -> str | None:
    """Stripped stdout of a git command, or ``None`` when it fails."""
    proc = _run_git(repo_root, args)
    if proc is None or proc.returncode != 0:
        return None
    return proc.stdout.strip()


def is_git_repo(path: Path) -> bool:
    return git_output(path, ["rev-parse", "--is-inside-work-tree"]) == "true"


def git_root(path: Path) -> Path | None:
    output = git_output(path, ["rev-parse", "--show-toplevel"])
    return Path(output) if output else None


def tracked_files(repo_root: Path) -> list[str]:
    output = git_output(repo_root, ["ls-files"])
    if not output:
        return []
    return [line for line in output.splitlines() if line.strip()]


def expand_globs(root: Path, patterns: list[str]) -> list[str]:
    matched: set[str] = set()
    for pattern in patterns:
        for path in root.glob(pattern):
            if path.is_file():
                matched.add(path.relative_to(root).as_posix())
    return sorted(matched)


def source_files(root: Path, patterns: list[str] | None = None) -> list[str]:
    """Tracked source set: ``patterns`` when given, else every git-tracked file."""
    if patterns:
        return expand_globs(root, patterns)
    return tracked_files(root)


def latest_mtime(root: Path, patterns: list[str] | None = None) -> float:
    """Newest modification time (epoch seconds) across the tracked source set, 0 if empty."""
    newest = 0.0
    for relative in source_files(root, patterns):
        try:
            mtime = (root / relative).stat().st_mtime
        except OSError as exc:
            logger.debug("stat failed for %s: %s", relative, exc)
            continue
        if mtime > newest:
            newest = mtime
    return newest


def resolve_project_root(project_dir: Path) -> Path:
    """Nearest directory (up to the git root) holding ``taskgate.toml`` or ``script/test``."""
    current = project_dir.resolve()
    root = git_root(current)
    if root is None:
        return current
    root = root.resolve()
    probe = current
    while True:
        if (probe / "taskgate.toml").exists() or (probe / "script" / "test").exists():
            return probe
        if probe == root or probe.parent == probe:
            return probe
        probe = probe.parent
