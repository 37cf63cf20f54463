from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler


TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOG_FILE_NAME = "ot-ews.log"

LEVELS: Dict[str, int] = {
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "FATAL": logging.CRITICAL,
    "CRITICAL": logging.CRITICAL,
}

_HANDLER_TAG = "_otsentinel_handler"


class LoggingSetupError(RuntimeError):
    pass


def parse_level(name: str) -> int:
    try:
        return LEVELS[name.strip().upper()]
    except KeyError:
        raise ValueError(f"unknown log level {name!r} (expected one of {', '.join(LEVELS)})") from None


class JSONLineFormatter(logging.Formatter):
    """One JSON object per line; structured events are merged into the payload."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if isinstance(event, dict):
            payload.update(event)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _check_writable(directory: Path) -> None:
    probe = directory / ".write_test"
    try:
        probe.write_bytes(b"")
        probe.unlink()
    except OSError as e:
        raise LoggingSetupError(f"log directory {directory} is not writable: {e}") from e


def setup_logging(level: int | str = logging.INFO, log_dir: Optional[Path] = None, console: Optional[Console] = None) -> logging.Logger:
    """Configure the package logger: rich console output plus a JSON-lines file under log_dir."""
    if isinstance(level, str):
        level = parse_level(level)
    logger = logging.getLogger("otsentinel")
    logger.setLevel(level)
    logger.propagate = False

    # Prevent duplicate handlers on re-entry
    for h in list(logger.handlers):
        if getattr(h, _HANDLER_TAG, False):
            logger.removeHandler(h)
            h.close()

    sh = RichHandler(console=console, show_path=False, rich_tracebacks=True)
    sh.setFormatter(logging.Formatter("%(message)s"))
    setattr(sh, _HANDLER_TAG, True)
    logger.addHandler(sh)

    if log_dir is not None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LoggingSetupError(f"cannot create log directory {log_dir}: {e}") from e
        _check_writable(log_dir)
        fh = logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8")
        fh.setFormatter(JSONLineFormatter())
        setattr(fh, _HANDLER_TAG, True)
        logger.addHandler(fh)

    return logger
