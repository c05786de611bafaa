import logging
import json
import os
import sys
from pathlib import Path
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler


# Extra fields copied into structured entries when present on the record
_EXTRA_KEYS = (
    "method", "path", "status", "duration_ms", "client_ip",
    "job_id", "request_id", "client_id", "step", "total_steps",
    "retry_count", "max_retries", "delay_ms",
    "error", "error_type", "service", "circuit_state", "failures", "threshold",
)


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter with correlation ID injection"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        correlation_id = getattr(record, "correlation_id", None) or _current_correlation_id()
        if correlation_id:
            entry["correlation_id"] = correlation_id

        for key in _EXTRA_KEYS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)

        # Add source location for warnings and errors
        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.filename}:{record.lineno}"

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


class SimpleFormatter(logging.Formatter):
    """Human-readable formatter for local development"""

    def __init__(self):
        super().__init__(
            '%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = {k: getattr(record, k) for k in _EXTRA_KEYS if hasattr(record, k)}
        if extras:
            base = f"{base} | {extras}"
        return base


def _current_correlation_id() -> str:
    # Imported lazily: the middleware module imports this logger
    from app.middleware.correlation import get_correlation_id
    return get_correlation_id()


def setup_logger(name: str = "orchestrator", level: str = None) -> logging.Logger:
    """
    Setup application logger with structured JSON output.

    JSON goes to stdout when LOG_FORMAT=json (production log drains);
    otherwise a readable console format plus an optional rotating file.
    """
    logger = logging.getLogger(name)

    # Don't add handlers if they already exist
    if logger.handlers:
        return logger

    level = level or os.getenv("LOG_LEVEL", "INFO")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    is_production = os.getenv("LOG_FORMAT") == "json"

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(StructuredFormatter() if is_production else SimpleFormatter())
    logger.addHandler(console_handler)

    log_dir = os.getenv("LOG_DIR")
    if log_dir and not is_production:
        try:
            Path(log_dir).mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                Path(log_dir) / "orchestrator.log",
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
                encoding='utf-8'
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(StructuredFormatter())
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(f"Could not setup file logging: {e}")

    return logger


# Default logger instance
logger = setup_logger()


def get_logger(name: str = None) -> logging.Logger:
    """Get logger instance"""
    if name:
        return setup_logger(name)
    return logger
