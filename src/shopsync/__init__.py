"""shopsync keeps a local stock cache in step with a remote digital-goods catalog.

Every module logs through the package logger exported here as ``log``. On
import it only writes to stderr. The rotating log file belongs to a
deployment, not to the installed package, so it is attached by
:func:`attach_log_file` once ``config.ini`` has been read.

``SHOPSYNC_LOG_LEVEL`` overrides the level everywhere, including the
``[Logging] Level`` entry of the configuration.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


LOG_LEVEL_ENV_VAR = "SHOPSYNC_LOG_LEVEL"
LOG_FILE_NAME = "shopsync.log"

_FORMATTER = logging.Formatter(
    fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


def resolve_log_level(name: Optional[str], default: int = logging.INFO) -> int:
    """Map a level name such as ``"debug"`` to its ``logging`` constant.

    Unknown or empty names yield ``default``.
    """

    if not name or not name.strip():
        return default
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else default


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(resolve_log_level(os.getenv(LOG_LEVEL_ENV_VAR)))
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(_FORMATTER)
    logger.addHandler(console_handler)
    return logger


def attach_log_file(directory: Path, level: Optional[str] = None) -> Optional[Path]:
    """Mirror the package log into ``directory/shopsync.log``.

    A file handler attached by an earlier call is closed and replaced, so the
    log follows whichever configuration was loaded last. ``level`` is applied
    unless ``SHOPSYNC_LOG_LEVEL`` is set.

    Args:
        directory (Path): Directory for the rotating log file. Created on
            demand.
        level (str | None): Optional level name from the configuration.

    Returns:
        Path | None: The log file in use, or ``None`` when the directory is
            not writable. Console logging carries on in that case.
    """

    for handler in list(log.handlers):
        if isinstance(handler, RotatingFileHandler):
            log.removeHandler(handler)
            handler.close()

    if level and not os.getenv(LOG_LEVEL_ENV_VAR):
        log.setLevel(resolve_log_level(level, log.level))

    log_file = Path(directory) / LOG_FILE_NAME
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
    except OSError as exc:
        log.warning("Unable to open log file '%s' (%s); logging to stderr only", log_file, exc)
        return None

    file_handler.setFormatter(_FORMATTER)
    log.addHandler(file_handler)
    return log_file


log = _configure_logging()
