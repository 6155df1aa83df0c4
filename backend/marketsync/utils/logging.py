# backend/marketsync/utils/logging.py
"""
Logging configuration for the market data sync service.

Provides:
- Environment-based log levels, with per-logger overrides
  (LOG_LEVEL_OVERRIDES='{"marketsync.services.market_data": "DEBUG"}')
- Correlation ID on every record (request ID or ingestion run ID)
- JSON format option for log aggregation; lines logged inside an ingestion
  run carry a separate "run_id" field
- Suppression of noisy third-party loggers (yfinance, urllib3, httpx)

Usage:
    from marketsync.utils import setup_logging

    setup_logging()  # once, before creating the FastAPI app

Log Levels:
    DEBUG   - Per-request provider calls, throttle waits, raw sample counts
    INFO    - Run lifecycle, assets created, per-ticker results
    WARNING - Retries, rate limits, skipped tickers, rejected triggers
    ERROR   - Failed runs, storage outages, webhook failures
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from marketsync.config import settings
from marketsync.utils.context import get_correlation_id

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(correlation_id)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NO_CORRELATION_ID = "no-correlation-id"
RUN_ID_PREFIX = "run-"

NOISY_LOGGERS = (
    "yfinance",
    "peewee",
    "curl_cffi",
    "urllib3",
    "httpx",
    "httpcore",
    "asyncio",
)

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Attributes every LogRecord has; anything else came in through `extra=`
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "correlation_id",
    "message",
    "asctime",
}


class CorrelationIdFilter(logging.Filter):
    """Stamps `correlation_id` on every record passing the handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or NO_CORRELATION_ID
        return True


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line:

        {"timestamp": "...", "level": "INFO", "logger": "marketsync.services.scheduler",
         "correlation_id": "run-1a2b3c4d5e6f", "run_id": "run-1a2b3c4d5e6f",
         "message": "...", "extra": {"ticker": "PETR4"}}
    """

    def format(self, record: logging.LogRecord) -> str:
        correlation_id = getattr(record, "correlation_id", NO_CORRELATION_ID)
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "correlation_id": correlation_id,
            "message": record.getMessage(),
        }
        if correlation_id.startswith(RUN_ID_PREFIX):
            entry["run_id"] = correlation_id

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        extra = {key: value for key, value in vars(record).items() if key not in _RECORD_ATTRS}
        if extra:
            entry["extra"] = extra

        return json.dumps(entry, default=str)


def setup_logging(
        level: str | None = None,
        log_format: str | None = None,
        overrides: dict[str, str] | None = None,
        suppress_noisy_loggers: bool = True,
) -> None:
    """
    Configure the root logger with one stdout handler.

    Args:
        level: Root level name. Defaults to settings.log_level.
        log_format: 'text' or 'json'. Defaults to settings.log_format.
        overrides: Logger name -> level name, applied last (so they can
            re-enable a suppressed third-party logger). Defaults to
            settings.log_level_overrides.
        suppress_noisy_loggers: Set third-party loggers to WARNING.

    Raises:
        ValueError: Unknown level name
    """
    root_level = _get_log_level(level or settings.log_level)
    format_type = (log_format or settings.log_format).lower()
    overrides = settings.log_level_overrides if overrides is None else overrides

    if format_type == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(fmt=TEXT_FORMAT, datefmt=DATE_FORMAT)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    if suppress_noisy_loggers:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    for name, name_level in overrides.items():
        logging.getLogger(name).setLevel(_get_log_level(name_level))

    logging.getLogger(__name__).info(
        f"Logging configured: level={logging.getLevelName(root_level)}, format={format_type}, "
        f"overrides={len(overrides)}"
    )


def _get_log_level(level_str: str) -> int:
    """
    Convert a level name to its logging constant.

    Raises:
        ValueError: If level_str is not a valid log level
    """
    key = level_str.upper().strip()
    if key not in _LEVELS:
        raise ValueError(f"Invalid log level: '{key}'. Valid levels are: {', '.join(_LEVELS)}")
    return _LEVELS[key]
