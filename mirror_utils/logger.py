import json
import logging
import os
import time
import psutil
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import traceback

DEFAULT_LOGGER_NAME = "lambda-mirror"

# Names of the stdlib loggers configured here, so the level can change at runtime
_configured_loggers = set()


class JsonFormatter(logging.Formatter):
    """
    JSON formatter so relay logs read the same in CloudWatch and in a local terminal.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info)
            }

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class StructuredLogger:
    """
    Thin wrapper around a stdlib logger; keyword arguments become JSON fields.
    """

    def __init__(self, name: str = DEFAULT_LOGGER_NAME, context: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self.context = context or {}

        if not self.logger.handlers:
            log_level = os.getenv("LOG_LEVEL", "INFO").upper()
            self.logger.setLevel(getattr(logging, log_level, logging.INFO))

            handler = logging.StreamHandler()
            handler.setFormatter(JsonFormatter())

            self.logger.addHandler(handler)
            self.logger.propagate = False
            _configured_loggers.add(name)

    def _add_context(self, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        merged = self.context.copy()
        if extra:
            merged.update(extra)
        return merged

    def info(self, message: str, **kwargs):
        self.logger.info(message, extra={"extra_fields": self._add_context(kwargs)})

    def error(self, message: str, **kwargs):
        self.logger.error(message, extra={"extra_fields": self._add_context(kwargs)})

    def warning(self, message: str, **kwargs):
        self.logger.warning(message, extra={"extra_fields": self._add_context(kwargs)})

    def debug(self, message: str, **kwargs):
        self.logger.debug(message, extra={"extra_fields": self._add_context(kwargs)})

    def exception(self, message: str, **kwargs):
        """Log at ERROR level with the active exception's traceback attached."""
        self.logger.exception(message, extra={"extra_fields": self._add_context(kwargs)})


def set_log_level(level: str) -> None:
    """Change the level of every relay logger, including ones created later."""
    os.environ["LOG_LEVEL"] = level.upper()
    for name in _configured_loggers:
        logging.getLogger(name).setLevel(getattr(logging, level.upper(), logging.INFO))


def get_logger(name: str = DEFAULT_LOGGER_NAME, lambda_context=None) -> StructuredLogger:
    """
    Get a configured structured logger instance.

    Args:
        name: Logger name
        lambda_context: AWS Lambda context object (optional). Both the real
            runtime context and the local stand-in handed to relayed
            handlers are accepted.

    Returns:
        Configured StructuredLogger instance
    """
    context = {}

    if lambda_context is not None:
        context = {
            "request_id": getattr(lambda_context, "aws_request_id", None),
            "function_name": getattr(lambda_context, "function_name", None),
        }

    return StructuredLogger(name, context)


class MetricsLogger:
    """
    Counters, gauges and memory usage for a long-running relay loop.
    """

    def __init__(self, logger: StructuredLogger):
        self.logger = logger
        self.metrics: Dict[str, Any] = {}
        self.counters: Dict[str, int] = {}
        self.start_time = time.time()

    def record(self, metric_name: str, value: Any) -> None:
        self.metrics[metric_name] = value

    def increment(self, metric_name: str, value: int = 1) -> None:
        self.counters[metric_name] = self.counters.get(metric_name, 0) + value

    def record_memory_usage(self) -> None:
        try:
            process = psutil.Process()
            self.record("memory_used_mb", process.memory_info().rss / 1024 / 1024)
            self.record("memory_percent", process.memory_percent())
        except psutil.Error as e:
            self.logger.warning("Could not record memory usage", error=str(e))

    def record_tick(self, claimed: int, completed: int, failed: int, duration: float) -> None:
        """Record the outcome of one dispatcher tick."""
        self.record("last_tick_duration_seconds", duration)
        self.increment("ticks")
        self.increment("invocations_claimed", claimed)
        self.increment("invocations_completed", completed)
        self.increment("invocations_failed", failed)

    def record_store_failure(self, operation: str) -> None:
        self.increment(f"store_{operation}_failures")

    def log_metrics(self) -> None:
        """Log all recorded metrics as a single structured line."""
        self.record("uptime_seconds", round(time.time() - self.start_time, 3))
        self.record_memory_usage()

        handled = self.counters.get("invocations_completed", 0) + self.counters.get("invocations_failed", 0)
        if handled > 0:
            self.record("success_rate", round(self.counters.get("invocations_completed", 0) / handled, 3))

        all_metrics = {
            **self.metrics,
            **{f"counter_{k}": v for k, v in self.counters.items()}
        }

        self.logger.info("Performance metrics", metrics=all_metrics)
