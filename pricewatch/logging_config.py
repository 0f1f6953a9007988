"""Structured logging configuration."""

import logging
import sys
from datetime import datetime
from pathlib import Path

from pythonjsonlogger import jsonlogger

from pricewatch.config import settings

# Fields a ProductLogger attaches to every record
CONTEXT_FIELDS = ("product_id", "product", "variant_id")

NOISY_LOGGERS = ("httpx", "httpcore", "openai", "apscheduler.executors.default")


class PriceWatchJsonFormatter(jsonlogger.JsonFormatter):
    """JSON records with UTC timestamp, level and source location."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.utcnow().isoformat() + "Z"
        log_record["level"] = record.levelname
        log_record["source"] = f"{record.filename}:{record.lineno}"


class ContextFormatter(logging.Formatter):
    """Console formatter that appends product context as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = " ".join(
            f"{name}={getattr(record, name)}" for name in CONTEXT_FIELDS if hasattr(record, name)
        )
        return f"{line} [{context}]" if context else line


def setup_logging(log_dir: str | Path | None = None) -> logging.Logger:
    """
    Configure root logging: console, logs/app.log (JSON) and logs/error.log.

    Args:
        log_dir: Directory for the JSON log files (defaults to settings.log_dir)
    """
    logs_dir = Path(log_dir or settings.log_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    json_formatter = PriceWatchJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    console = logging.StreamHandler(sys.stdout)
    if settings.log_json_console:
        console.setFormatter(json_formatter)
    else:
        console.setFormatter(
            ContextFormatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    root_logger.addHandler(console)

    app_log = logging.FileHandler(logs_dir / "app.log", encoding="utf-8")
    app_log.setFormatter(json_formatter)
    root_logger.addHandler(app_log)

    error_log = logging.FileHandler(logs_dir / "error.log", encoding="utf-8")
    error_log.setLevel(logging.ERROR)
    error_log.setFormatter(json_formatter)
    root_logger.addHandler(error_log)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


class ProductLogger(logging.LoggerAdapter):
    """Adds product context to each record; per-call extra wins on conflicts."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str, **context) -> ProductLogger:
    """Logger carrying product context, e.g. get_logger(__name__, product_id=7)."""
    unknown = set(context) - set(CONTEXT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown log context fields: {sorted(unknown)}")
    return ProductLogger(logging.getLogger(name), context)
