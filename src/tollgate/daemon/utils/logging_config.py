"""JSON logging for the Tollgate daemon.

Every line on stdout (and in ``$TOLLGATE_LOG_DIR/tollgate.log``) is one JSON
object. Structured fields passed to ``StructuredLogger`` land at the top level
of that object, next to the message; ``event`` names the accounting event.
"""

import json
import logging
import os
import sys
from datetime import UTC, datetime
from typing import Any, Dict

ROOT_LOGGER = "tollgate"


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }

        fields = getattr(record, "extra_fields", None)
        if fields:
            log_entry.update(fields)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO"):
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level.upper())
    logger.propagate = False

    formatter = JSONFormatter()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    # Remove existing handlers to avoid duplicates on reload
    logger.handlers = [handler]

    log_dir = os.getenv("TOLLGATE_LOG_DIR")
    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.FileHandler(os.path.join(log_dir, "tollgate.log"))
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            sys.stderr.write(f"Failed to setup file logging: {e}\n")

    # The audit sink records every request outcome; uvicorn's own lines would duplicate it
    logging.getLogger("uvicorn.access").disabled = True


class StructuredLogger:
    """Thin wrapper: ``logger.info("Tokens consumed", user_id=..., tokens=...)``."""

    def __init__(self, name: str):
        if name.startswith(f"{ROOT_LOGGER}."):
            name = name[len(ROOT_LOGGER) + 1:]
        self.logger = logging.getLogger(f"{ROOT_LOGGER}.{name}")

    def _log(self, level: int, msg: str, fields: Dict[str, Any]):
        if self.logger.isEnabledFor(level):
            self.logger.log(level, msg, extra={"extra_fields": fields}, stacklevel=3)

    def debug(self, msg: str, **kwargs):
        self._log(logging.DEBUG, msg, kwargs)

    def info(self, msg: str, **kwargs):
        self._log(logging.INFO, msg, kwargs)

    def warning(self, msg: str, **kwargs):
        self._log(logging.WARNING, msg, kwargs)

    def error(self, msg: str, **kwargs):
        self._log(logging.ERROR, msg, kwargs)

    def critical(self, msg: str, **kwargs):
        self._log(logging.CRITICAL, msg, kwargs)
