from __future__ import annotations

import logging
import os
from pathlib import Path

LOG_FORMAT = "%(levelname)s: %(message)s"
FILE_LOG_FORMAT = "%(asctime)s %(process)d %(name)s %(levelname)s: %(message)s"


def configure_logging(verbose: bool = False, log_file: Path | None = None) -> None:
    """Warnings to stderr by default; ``verbose`` or ``TASKGATE_LOG_LEVEL`` lowers the bar.

    stdout is left alone since hook callers read the outcome from it.
    """
    level_name = os.environ.get("TASKGATE_LOG_LEVEL", "").upper()
    level = logging.DEBUG if verbose else getattr(logging, level_name, logging.WARNING)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT))
        handlers.append(file_handler)
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
