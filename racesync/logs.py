"""Logging setup for the racesync command line."""

import json
import logging
import sys
import traceback
from datetime import datetime
from typing import Any, TextIO

LEVELS = {
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

# Attributes every LogRecord has; anything else was passed through ``extra``
_RECORD_FIELDS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

HANDLER_NAME = "racesync-cli"

# httpx logs one INFO line per request
_CHATTY_LOGGERS = ("httpx", "httpcore")


class JSONFormatter(logging.Formatter):
    """One JSON object per line, including fields passed via ``extra``."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_FIELDS and not key.startswith("_"):
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(log_data, default=str)


def resolve_level(verbose: bool = False, log_level: str | None = None) -> int:
    """Explicit level wins; otherwise -v means debug and the default is warning."""
    if log_level:
        return LEVELS.get(log_level.lower(), logging.WARNING)
    return logging.DEBUG if verbose else logging.WARNING


def setup_logging(
    verbose: bool = False,
    log_level: str | None = None,
    json_output: bool = False,
    stream: TextIO | None = None,
) -> None:
    """Configure logging for a CLI run.

    Logs go to stderr so command output on stdout stays parseable. HTTP
    library request lines are only shown at debug level.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (error, warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
        stream: Destination, stderr by default.

    Calling it again replaces the handler installed by the previous call.
    """
    level = resolve_level(verbose, log_level)

    handler = logging.StreamHandler(stream or sys.stderr)
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
                datefmt="%H:%M:%S",
            )
        )

    handler.set_name(HANDLER_NAME)

    root = logging.getLogger()
    for existing in list(root.handlers):
        if existing.get_name() == HANDLER_NAME:
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    library_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)
