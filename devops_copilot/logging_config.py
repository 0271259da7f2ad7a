"""
Centralized logging configuration for the copilot backend.
JSON output in production, colored console output for local development.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict

# Structured fields passed through ``extra=`` that both formatters understand.
CONTEXT_FIELDS = (
    "request_id",
    "session_id",
    "duration_ms",
    "status_code",
    "endpoint",
    "method",
    "model",
)


class JSONFormatter(logging.Formatter):
    """
    Formats records as one JSON object per line for log aggregation.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        return json.dumps(log_data, default=str)


class ColoredFormatter(logging.Formatter):
    """
    Colored console formatter for development environments.
    """

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        log_color = self.COLORS.get(record.levelname, self.RESET)

        formatted = f"{log_color}[{record.levelname}]{self.RESET} "
        formatted += f"{record.name} - {record.getMessage()}"

        extras = []
        if hasattr(record, "request_id"):
            extras.append(f"request_id={record.request_id}")
        if hasattr(record, "session_id"):
            extras.append(f"session_id={record.session_id}")
        if hasattr(record, "duration_ms"):
            extras.append(f"duration={record.duration_ms}ms")
        if hasattr(record, "status_code"):
            extras.append(f"status={record.status_code}")

        if extras:
            formatted += f" ({', '.join(extras)})"

        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)

        return formatted


def setup_logging(
    log_level: str = None,
    use_json: bool = None,
    logger_name: str = None
) -> logging.Logger:
    """
    Configure and return a logger instance.

    Args:
        log_level: Logging level name. Defaults to LOG_LEVEL env var or INFO.
        use_json: Whether to emit JSON. Defaults to True when ENVIRONMENT is
                  production or LOG_FORMAT is json.
        logger_name: Name of the logger to configure. None configures the root logger.

    Returns:
        Configured logger instance.
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    if use_json is None:
        environment = os.getenv("ENVIRONMENT", "production").lower()
        log_format = os.getenv("LOG_FORMAT", "").lower()
        use_json = log_format == "json" or (environment == "production" and log_format != "console")

    level = getattr(logging, log_level, logging.INFO)

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)

    # Reconfiguring must not stack handlers
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(JSONFormatter() if use_json else ColoredFormatter())
    logger.addHandler(console_handler)

    if logger_name:
        logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a configured logger for a module (pass ``__name__``).
    """
    return setup_logging(logger_name=name)


setup_logging()
