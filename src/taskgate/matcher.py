from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from taskgate.state.signals import SignalStore
from taskgate.tasks import RunContext, When
from taskgate.variables import VariableResolver

logger = logging.getLogger(__name__)


def _env_value(name: str, context: RunContext, environ: Mapping[str, str]) -> str:
    return context.env.get(name) or environ.get(name) or ""


def _evaluate(
    when: When,
    context: RunContext,
    signals: SignalStore | None,
    variables: VariableResolver | None,
    environ: Mapping[str, str],
) -> bool:
    if when.file_exists is not None:
        if not (context.project_root / when.file_exists).exists():
            return False

    if when.env_set is not None:
        if not _env_value(when.env_set, context, environ):
            return False

    if when.env_not_set is not None:
        if _env_value(when.env_not_set, context, environ):
            return False

    if when.signal is not None:
        active = signals.get(context.session_id) if signals is not None else None
        if active is None or active.type != when.signal:
            return False

    if when.variables_present is not None:
        for name in when.variables_present:
            if variables is None or name not in variables.known:
                return False
            if not variables.resolve(name).strip():
                return False

    return True


def matches(
    when: When | None,
    context: RunContext,
    *,
    signals: SignalStore | None = None,
    variables: VariableResolver | None = None,
    environ: Mapping[str, str] | None = None,
) -> bool:
    """AND of every predicate present in ``when``; no ``when`` always matches.

    An error while evaluating a predicate counts as no match.
    """
    if when is None:
        return True
    try:
        return _evaluate(
            when,
            context,
            signals,
            variables,
            os.environ if environ is None else environ,
        )
    except Exception as exc:
        logger.warning("when-condition evaluation failed, treating as no match: %s", exc)
        return False
