"""Logging setup for the branchchat command line and services."""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

__all__ = ["LOG_DIR_ENV", "LOG_FILENAME", "get_log_path", "resolve_level", "setup_logging"]

LOG_DIR_ENV = "BRANCHCHAT_LOG_DIR"
LOG_FILENAME = "branchchat.log"
_DEFAULT_LOG_DIR = Path.home() / ".branchchat" / "logs"
_THIRD_PARTY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_log_path: Path | None = None


def setup_logging(
    level: int | str = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = False,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install a rotating file handler (plus optional stderr) on the root logger.

    Repeated calls are no-ops unless ``force`` is set, so library code and the
    CLI can both call it safely.
    """

    global _log_path
    if _log_path is not None and not force:
        return _log_path

    numeric_level = resolve_level(level)
    directory = _resolve_log_dir(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / LOG_FILENAME

    formatter = logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT)
    file_handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    handlers: list[logging.Handler] = [file_handler]

    if console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        handlers.append(stream_handler)

    for handler in handlers:
        handler.setLevel(numeric_level)

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _quiet_third_party(numeric_level)

    _log_path = path
    return path


def get_log_path() -> Path | None:
    """Return the active log file, or ``None`` before :func:`setup_logging`."""

    return _log_path


def resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    return value if isinstance(value, int) else logging.INFO


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    return Path(log_dir or os.environ.get(LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()


def _quiet_third_party(root_level: int) -> None:
    floor = max(root_level, logging.WARNING)
    for name in _THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(floor)
