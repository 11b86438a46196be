"""Logging setup for short-lived trigger invocations and the long-running app.

Every record goes to stdout, where the platform running the triggers
collects it. With ``log_json`` enabled the stdout lines are JSON objects
carrying the run context (``processor_id``, ``run_id``) as top-level
fields, so one Dispatcher run can be followed across stores. Local log
files are written only when ``log_dir`` is configured.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from pythonjsonlogger import jsonlogger

from price_tracker.config import settings

# Context attached by get_logger() that is always emitted as its own JSON key
CONTEXT_FIELDS = ("processor_id", "run_id")


class QueueJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that promotes run context to named fields."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.utcnow().isoformat() + "Z"
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["source"] = f"{record.filename}:{record.lineno}"

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_record[field] = value


def _json_formatter() -> QueueJsonFormatter:
    return QueueJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")


def setup_logging(log_dir: Optional[str | Path] = None, json_output: Optional[bool] = None):
    """Configure the root logger.

    Args:
        log_dir: Directory for app.log/error.log. Defaults to
            ``settings.log_dir``; no files are written when both are empty.
        json_output: Emit JSON on stdout. Defaults to ``settings.log_json``.
    """
    log_dir = log_dir if log_dir is not None else settings.log_dir
    json_output = settings.log_json if json_output is None else json_output

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    if json_output:
        console_handler.setFormatter(_json_formatter())
    else:
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    root_logger.addHandler(console_handler)

    if log_dir:
        logs_path = Path(log_dir)
        logs_path.mkdir(parents=True, exist_ok=True)

        app_handler = logging.FileHandler(logs_path / "app.log")
        app_handler.setFormatter(_json_formatter())
        root_logger.addHandler(app_handler)

        error_handler = logging.FileHandler(logs_path / "error.log")
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(_json_formatter())
        root_logger.addHandler(error_handler)

    return root_logger


class LoggerAdapter(logging.LoggerAdapter):
    """Adds the bound run context to every record's ``extra``."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str, **context) -> LoggerAdapter:
    """Logger bound to run context, e.g. ``get_logger(__name__, run_id=token)``."""
    return LoggerAdapter(logging.getLogger(name), context)
