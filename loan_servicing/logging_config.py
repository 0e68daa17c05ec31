"""
Structured Logging Configuration Module

JSON log lines for loan servicing operations. Service calls attach who did
what to which loan through ``log_action``; the formatter turns those record
attributes into top-level JSON keys.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any


STRUCTURED_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")


class JSONFormatter(logging.Formatter):
    """One JSON object per record; empty structured fields are omitted"""

    def format(self, record):
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "loan_servicing",
                  log_format: str = "json") -> logging.Logger:
    """
    Attach a single stream handler to ``logger_name``.

    Args:
        level: Log level name (DEBUG, INFO, ...)
        logger_name: Logger to configure
        log_format: "json" for JSONFormatter, anything else for plain text lines

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger


def setup_logging_from_settings(settings) -> logging.Logger:
    """Configure the package logger from LoanServicingConfig"""
    return setup_logging(settings.log_level, log_format=settings.log_format)


def get_logger(name: str = "loan_servicing") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log ``message`` with the acting user, the action name and the resource it touched.

    Fields left as None are not set on the record.
    """
    fields = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra,
    }
    logger.log(
        logging.getLevelName(level.upper()),
        message,
        extra={key: value for key, value in fields.items() if value is not None},
    )
