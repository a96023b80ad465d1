"""
Structured logging configuration with correlation ID support.
Provides JSON logging format suitable for serverless log collectors.
"""

import functools
import inspect
import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime
from typing import Optional

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
exchange_id_var: ContextVar[str] = ContextVar("exchange_id", default="")


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set correlation ID for the current context."""
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    """Get correlation ID for the current context."""
    return correlation_id_var.get()


def set_exchange_id(exchange_id: str) -> None:
    """Set the exchange (import run) ID for the current context."""
    exchange_id_var.set(exchange_id)


def get_exchange_id() -> str:
    """Get the exchange ID for the current context."""
    return exchange_id_var.get()


class StructuredJsonFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.
    One JSON object per line, ready for log aggregation.
    """

    def __init__(self, service_name: str = "catalog-sync"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "correlation_id": get_correlation_id(),
            "exchange_id": get_exchange_id(),
        }

        if record.funcName:
            log_data["function"] = record.funcName

        for attr in ("external_id", "sku", "filename", "bucket", "key", "mode"):
            if hasattr(record, attr):
                log_data[attr] = getattr(record, attr)

        if hasattr(record, "extra_data") and isinstance(record.extra_data, dict):
            log_data["data"] = record.extra_data

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
            }

        if hasattr(record, "duration_ms"):
            log_data["duration_ms"] = record.duration_ms
        if hasattr(record, "metrics"):
            log_data["metrics"] = record.metrics

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextualLogger(logging.LoggerAdapter):
    """
    Logger adapter that automatically includes contextual information.
    """

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        extra["correlation_id"] = get_correlation_id()
        extra["exchange_id"] = get_exchange_id()
        kwargs["extra"] = extra
        return msg, kwargs


def configure_logging(
    level: str = "INFO",
    service_name: str = "catalog-sync",
    json_format: bool = False,
) -> ContextualLogger:
    """
    Configure logging for the service.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        service_name: Name of the service for log identification
        json_format: Emit one JSON object per line instead of plain text

    Returns:
        Configured contextual logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)

    if json_format:
        handler.setFormatter(StructuredJsonFormatter(service_name))
    else:
        handler.setFormatter(
            logging.Formatter(
                "[%(levelname)s] %(asctime)s - %(name)s - %(message)s"
            )
        )

    root_logger.addHandler(handler)

    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)

    return ContextualLogger(root_logger, {})


class LogContext:
    """
    Context manager binding an exchange ID for the duration of a block.

    Example:
        with LogContext(exchange_id="sweep-1"):
            logger.info("Applying staged feed")
    """

    def __init__(self, exchange_id: Optional[str] = None):
        self.exchange_id = exchange_id or str(uuid.uuid4())
        self._token = None

    def __enter__(self):
        self._token = exchange_id_var.set(self.exchange_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            exchange_id_var.reset(self._token)
        return False


def log_execution_time(logger: logging.Logger):
    """
    Decorator to log function execution time. Works for plain functions
    and coroutines.

    Example:
        @log_execution_time(logger)
        async def apply(feed):
            ...
    """

    def _log_success(func, start_time):
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"{func.__name__} completed",
            extra={"duration_ms": round(duration_ms, 2)},
        )

    def _log_failure(func, start_time, e):
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.error(
            f"{func.__name__} failed after {duration_ms:.2f}ms: {e}",
            extra={"duration_ms": round(duration_ms, 2)},
            exc_info=True,
        )

    def decorator(func):
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                start_time = time.perf_counter()
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    _log_failure(func, start_time, e)
                    raise
                _log_success(func, start_time)
                return result
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _log_failure(func, start_time, e)
                raise
            _log_success(func, start_time)
            return result
        return wrapper
    return decorator
