"""
Structured Logging Setup

Consistent logging configuration across all agent services.
Uses JSON format for structured logs in production.
"""

import logging
import sys
import os
from datetime import datetime, timezone
import json


# Service loggers handed out so far
_service_names: set[str] = set()

# Level/format from the config file; environment values take precedence
_file_settings: dict[str, str] = {}

# Attributes every LogRecord carries; anything else came in through `extra`
_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "service",
    "message", "taskName",
))


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds service name to all logs"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs.setdefault("extra", {})
        kwargs["extra"]["service"] = self.extra.get("service", "unknown")
        return msg, kwargs


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Set up structured logging for a service.

    Args:
        service_name: Name of the service (e.g., "backend.gateway")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"relaywatch.{service_name}")
    logger.setLevel(numeric_level)

    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Don't propagate to root logger
    logger.propagate = False

    return logger


def _resolve_settings() -> tuple[str, bool]:
    log_level = os.environ.get("RELAYWATCH_LOG_LEVEL") or _file_settings.get("level", "INFO")
    log_format = os.environ.get("RELAYWATCH_LOG_FORMAT") or _file_settings.get("format", "json")
    return log_level, log_format.lower() == "json"


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    Level and format come from RELAYWATCH_LOG_LEVEL / RELAYWATCH_LOG_FORMAT,
    then from apply_log_settings().
    """
    log_level, json_format = _resolve_settings()

    logger = setup_logging(service_name, log_level, json_format)
    _service_names.add(service_name)
    return ServiceLoggerAdapter(logger, {"service": service_name})


def apply_log_settings(log_level: str, log_format: str) -> None:
    """
    Apply file-configured logging settings to every service logger.

    Environment values already set take precedence.
    """
    _file_settings["level"] = log_level
    _file_settings["format"] = log_format

    level, json_format = _resolve_settings()
    for service_name in sorted(_service_names):
        setup_logging(service_name, level, json_format)


def log_device_read(
    logger: logging.Logger,
    device_name: str,
    values: list[int] | None,
    elapsed_ms: int,
    success: bool = True,
    error: str | None = None,
) -> None:
    """Log a device range read"""
    if success:
        logger.debug(
            f"Read {device_name}: {len(values or [])} values in {elapsed_ms}ms",
            extra={"device": device_name, "value_count": len(values or []), "elapsed_ms": elapsed_ms},
        )
    else:
        logger.warning(
            f"Failed to read {device_name}: {error}",
            extra={"device": device_name, "elapsed_ms": elapsed_ms},
        )
