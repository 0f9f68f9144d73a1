from __future__ import annotations

import re
from collections.abc import Callable

from taskgate.sources import git_output
from taskgate.state.signals import SignalStore
from taskgate.tasks import RunContext

TEMPLATE_PATTERN = re.compile(r"\{\{(\w+)\}\}")

SESSION_VARIABLES = frozenset({"session_id", "signal_message"})


class VariableResolver:
    """Lazily computed named values for ``when.variables_present`` and prompt templates.

    Each value is computed at most once per resolver. Lookups that fail resolve
    to an empty string.
    """

    def __init__(self, context: RunContext, signals: SignalStore | None = None) -> None:
        self.context = context
        self.signals = signals
        self._cache: dict[str, str] = {}
        self._resolvers: dict[str, Callable[[], str]] = {
            "staged_diff": lambda: self._git(["diff", "--cached"]),
            "staged_files": lambda: self._git(["diff", "--cached", "--name-only"]),
            "working_diff": lambda: self._git(["diff"]),
            "changed_files": lambda: self._git(["diff", "--name-only", "HEAD"]),
            "git_head": lambda: self._git(["rev-parse", "HEAD"]),
            "git_status": lambda: self._git(["status", "--short"]),
            "recent_commits": lambda: self._git(["log", "--oneline", "-10"]),
            "project_dir": lambda: str(self.context.project_root),
            "root_dir": lambda: str(self.context.project_root),
            "session_id": lambda: self.context.session_id or "",
            "signal_message": self._signal_message,
            "test_output": lambda: self.context.test_output,
            "tool_command": lambda: str(self.context.tool_input.get("command") or ""),
            "file_path": lambda: str(self.context.tool_input.get("file_path") or ""),
        }

    @property
    def known(self) -> frozenset[str]:
        return frozenset(self._resolvers)

    def _git(self, args: list[str]) -> str:
        return git_output(self.context.project_root, args) or ""

    def _signal_message(self) -> str:
        if self.signals is None:
            return ""
        signal = self.signals.get(self.context.session_id)
        if signal is None:
            return ""
        return signal.message or ""

    def resolve(self, name: str) -> str:
        """Value of ``name``; raises ``KeyError`` for names nobody computes."""
        if name not in self._cache:
            resolver = self._resolvers[name]
            self._cache[name] = resolver()
        return self._cache[name]

    def invalidate(self, name: str) -> None:
        self._cache.pop(name, None)


def template_variables(template: str) -> list[str]:
    return sorted(set(TEMPLATE_PATTERN.findall(template or "")))


def unknown_variables(template: str, resolver: VariableResolver) -> list[str]:
    return [name for name in template_variables(template) if name not in resolver.known]


def expand_template(template: str, resolver: VariableResolver) -> str:
    if not template:
        return ""

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in resolver.known:
            return match.group(0)
        return resolver.resolve(name)

    return TEMPLATE_PATTERN.sub(_replace, template)
