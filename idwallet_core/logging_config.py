"""
Structured logging configuration for idwallet.

Supports two output formats:
  - **human**: coloured single-line output
  - **json**: newline-delimited JSON for log aggregators

Every handler carries a redaction filter so that long hex strings (private
keys, encrypted blobs) never reach a log sink even if a caller formats one
into a message by mistake.

Usage:
    from idwallet_core.logging_config import setup_logging
    setup_logging(level="DEBUG", fmt="json", log_file="idwallet.log")
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from idwallet_core.config import LoggingConfig

_HEX_SECRET = re.compile(r"\b[0-9a-fA-F]{64,}\b")


class RedactingFilter(logging.Filter):
    """Replace 64+ character hex runs with ``<redacted>``."""

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        if _HEX_SECRET.search(msg):
            record.msg = _HEX_SECRET.sub("<redacted>", msg)
            record.args = None
        return True


class _JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj, default=str)


class _HumanFormatter(logging.Formatter):
    """Coloured, concise single-line format."""

    COLOURS = {
        "DEBUG": "\033[36m",     # cyan
        "INFO": "\033[32m",      # green
        "WARNING": "\033[33m",   # yellow
        "ERROR": "\033[31m",     # red
        "CRITICAL": "\033[1;31m",  # bold red
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.COLOURS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = (
            f"{colour}{ts} [{record.levelname:<7}]{self.RESET} "
            f"{record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    fmt: str = "human",
    log_file: Optional[str] = None,
) -> None:
    """
    Configure the root logger for the wallet process.

    Parameters
    ----------
    level : str
        One of DEBUG, INFO, WARNING, ERROR, CRITICAL.
    fmt : str
        ``"human"`` for coloured single-line output, ``"json"`` for
        newline-delimited JSON.
    log_file : str, optional
        If provided, logs are *also* written to this file (always JSON).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_JSONFormatter() if fmt == "json" else _HumanFormatter())
    console.addFilter(RedactingFilter())
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(path))
        fh.setFormatter(_JSONFormatter())
        fh.addFilter(RedactingFilter())
        root.addHandler(fh)


def setup_from_config(cfg: LoggingConfig) -> None:
    """Apply a ``[logging]`` config section."""
    setup_logging(level=cfg.level, fmt=cfg.format, log_file=cfg.file)
