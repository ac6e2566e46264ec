"""Logging helpers for the vcsync executables."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
from typing import Optional, Union

LOG_SUBPATH = Path(".vcsync") / "logs" / "vcsync.log"
STRUCTURED_LOG_SUBPATH = Path(".vcsync") / "logs" / "vcsync.jsonl"
MAX_BYTES = 2 * 1024 * 1024  # 2 MB per log segment
BACKUP_COUNT = 3
FALLBACK_ROOT = Path.home() / ".cache" / "vcsync"


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def setup_logging(
    root_dir: Path,
    level: Union[str, int] = logging.WARNING,
    structured: bool = False,
) -> Path:
    """Configure vcsync logging for one run.

    Args:
        root_dir: Project root; logs go under ``.vcsync/logs``.
        level: Logging level (string name or int constant).
        structured: Whether to also write JSON lines.

    Returns:
        Path to the primary (text) log file.
    """
    log_path = _resolve_path(root_dir, LOG_SUBPATH)

    resolved_level = _resolve_level(level)
    text_formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(text_formatter)

    # Console output is reserved for the rich UI; only problems go to stderr.
    console_handler = logging.StreamHandler()
    console_handler.setLevel(max(resolved_level, logging.WARNING))
    console_handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))

    logger = logging.getLogger("vcsync")
    _reset_handlers(logger)
    logger.setLevel(resolved_level)
    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    if structured:
        json_handler = RotatingFileHandler(
            _resolve_path(root_dir, STRUCTURED_LOG_SUBPATH),
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        json_handler.setFormatter(JSONFormatter())
        logger.addHandler(json_handler)

    logger.propagate = False
    return log_path


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.WARNING)
    return int(level)


def _resolve_path(root_dir: Path, subpath: Path) -> Path:
    primary = root_dir / subpath
    try:
        primary.parent.mkdir(parents=True, exist_ok=True)
        return primary
    except PermissionError:
        fallback = FALLBACK_ROOT / subpath.name
        fallback.parent.mkdir(parents=True, exist_ok=True)
        print(
            f"[logging] Unable to write logs under '{root_dir}'; "
            f"falling back to '{fallback.parent}'.",
            file=sys.stderr,
        )
        return fallback


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


__all__ = ["setup_logging", "JSONFormatter", "LOG_SUBPATH", "STRUCTURED_LOG_SUBPATH", "FALLBACK_ROOT"]
