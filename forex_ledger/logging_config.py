"""
Structured Logging Configuration Module

JSON log lines for ledger, exchange desk and workflow operations. Every
engine logger lives under the "forex" namespace, and operations attach who
did what to which record through log_action.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional

from .config import get_config

ENGINE_LOGGER = "forex"

# Attributes log_action sets on a record, in output order
ACTION_FIELDS = ("user_id", "action", "resource", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record, carrying the action fields that are set"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in ACTION_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        # Decimals and datetimes in extra are written as strings
        return json.dumps(log_entry, default=str)


def setup_logging(level: Optional[str] = None, logger_name: str = ENGINE_LOGGER,
                  log_format: Optional[str] = None) -> logging.Logger:
    """
    Attach a single stream handler to the engine logger.

    Level and format default to FOREX_LOG_LEVEL and FOREX_LOG_FORMAT; any
    format other than "json" gives plain text lines.
    """
    config = get_config()
    level = level or config.log_level
    log_format = log_format or config.log_format

    logger = logging.getLogger(logger_name)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    return logger


def get_logger(name: str = ENGINE_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, extra: Optional[dict] = None):
    """
    Log an engine operation with its actor, action name and target record.

    Args:
        logger: Engine logger
        level: Level name (info, warning, error, ...)
        message: Human readable summary
        user_id: Actor performing the operation
        action: Operation name, e.g. "validate_transfer"
        resource: Transaction, account or settlement id acted upon
        extra: Amounts, rates and other details
    """
    fields = {"user_id": user_id, "action": action, "resource": resource, "extra": extra}
    logger.log(getattr(logging, level.upper()), message,
               extra={name: value for name, value in fields.items() if value},
               stacklevel=2)
