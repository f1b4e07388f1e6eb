"""
Logging setup for applications embedding the wallet SDK.

The SDK modules only create module-level loggers; handlers are installed
here, by the application, never by library code. Pipeline records carry
``step`` and ``kind`` attributes (see ``vfx_raw_transaction``), which both
formatters surface.

Usage:
    from logging_config import setup_logging
    setup_logging(level="DEBUG", fmt="json", log_file="logs/wallet.log")
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from vfx_errors import VfxConfigError

LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
FORMATS = ("human", "json")

# Record attributes set through ``extra=`` by the transaction pipeline
PIPELINE_FIELDS = ("step", "kind")

# requests logs every connection through urllib3 at DEBUG
_NOISY_LOGGERS = ("urllib3",)


def _pipeline_fields(record: logging.LogRecord) -> dict[str, str]:
    return {name: getattr(record, name) for name in PIPELINE_FIELDS if hasattr(record, name)}


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        log_obj.update(_pipeline_fields(record))
        if record.exc_info and record.exc_info[1]:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj, default=str)


class HumanFormatter(logging.Formatter):
    """Single-line format, coloured by level when writing to a terminal."""

    COLOURS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, colour: bool = True) -> None:
        super().__init__()
        self.colour = colour

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"[{record.levelname:<7}]"
        if self.colour:
            level = f"{self.COLOURS.get(record.levelname, '')}{level}{self.RESET}"
        line = f"{ts} {level} {record.name}: {record.getMessage()}"
        fields = _pipeline_fields(record)
        if fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    fmt: str = "human",
    log_file: str | None = None,
) -> None:
    """
    Configure the root logger.

    level: one of DEBUG, INFO, WARNING, ERROR, CRITICAL.
    fmt: "human" for single-line output, "json" for JSON lines.
    log_file: if given, records are also written there (always JSON).

    Raises VfxConfigError for an unknown level or format.
    """
    level_name = level.upper()
    if level_name not in LEVELS:
        raise VfxConfigError(f"Unknown log level {level!r}. Expected one of {', '.join(LEVELS)}.")
    if fmt not in FORMATS:
        raise VfxConfigError(f"Unknown log format {fmt!r}. Expected 'human' or 'json'.")

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        console.setFormatter(JSONFormatter())
    else:
        console.setFormatter(HumanFormatter(colour=sys.stderr.isatty()))
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(path))
        fh.setFormatter(JSONFormatter())
        root.addHandler(fh)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.WARNING))
