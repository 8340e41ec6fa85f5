"""
Ledgerfold Observability

Structured logging and correlation-id propagation for the engine.

Component loggers live under the ``ledgerfold`` logger namespace as
``ledgerfold.<layer>.<component>`` and propagate to one handler installed on
``ledgerfold`` itself. Each record is written as a single line, either a JSON
object or plain text. The line carries the layer, the operation name, the
correlation id of the current context and any keyword context supplied at
the call site:

    _log = get_logger("proof_aggregator", Layer.AGGREGATION)
    _log.info("Aggregate produced", operation="round", start=0, end=10)

    {"timestamp": "...", "level": "info", "logger": "ledgerfold.aggregation.proof_aggregator",
     "message": "Aggregate produced", "layer": "aggregation", "operation": "round",
     "context": {"start": 0, "end": 10}}

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import functools
import json
import logging
import sys
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import IO, Any, Callable, Dict, Optional, TypeVar

ROOT_LOGGER = "ledgerfold"

LOG_LEVELS: Dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

LOG_FORMATS = ("json", "text")

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


class Layer(Enum):
    """Engine layers, used as the second segment of logger names."""
    TREE = "tree"
    AGGREGATION = "aggregation"
    STATE = "state"
    PROVENANCE = "provenance"
    ANCHOR = "anchor"
    DISTRIBUTION = "distribution"
    STORAGE = "storage"
    ENGINE = "engine"
    API = "api"
    CLI = "cli"
    CONFIG = "config"


# ════════════════════════════════════════════════════════════════════════════
# OUTPUT
# ════════════════════════════════════════════════════════════════════════════

_OPTIONAL_FIELDS = ("correlation_id", "layer", "operation", "duration_ms", "error_code")


class StructuredFormatter(logging.Formatter):
    """Render a record as one JSON object or one text line."""

    def __init__(self, fmt: str = "json"):
        super().__init__()
        self.fmt = fmt

    def event(self, record: logging.LogRecord) -> Dict[str, Any]:
        event: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in _OPTIONAL_FIELDS:
            value = getattr(record, name, None)
            if value is not None and value != "":
                event[name] = value
        context = getattr(record, "context", None)
        if context:
            event["context"] = context
        if record.exc_info:
            event["exception"] = self.formatException(record.exc_info)
        return event

    def format(self, record: logging.LogRecord) -> str:
        event = self.event(record)
        if self.fmt == "json":
            return json.dumps(event, default=str)

        parts = [event["timestamp"], event["level"].upper(), event["logger"], event["message"]]
        if "correlation_id" in event:
            parts.append(f"[{event['correlation_id']}]")
        parts.extend(f"{k}={v}" for k, v in sorted(event.get("context", {}).items()))
        line = " ".join(parts)
        if "exception" in event:
            line += "\n" + event["exception"]
        return line


class StructuredHandler(logging.Handler):
    """
    Writes formatted records to ``stream``.

    With no explicit stream the handler writes to whatever ``sys.stderr`` is
    at emit time, so replacing stderr later (test capture, daemonizing) is
    honoured.
    """

    def __init__(self, stream: Optional[IO[str]] = None, fmt: str = "json"):
        super().__init__()
        self.stream = stream
        self.setFormatter(StructuredFormatter(fmt))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            record.correlation_id = correlation_id_var.get()
            stream = self.stream or sys.stderr
            stream.write(self.format(record) + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


def configure_logging(
    level: str = "info",
    fmt: str = "json",
    stream: Optional[IO[str]] = None,
) -> StructuredHandler:
    """Install (or replace) the engine's log handler and set its level."""
    level_key = level.lower()
    if level_key not in LOG_LEVELS:
        raise ValueError(f"Unknown log level: {level}")
    if fmt not in LOG_FORMATS:
        raise ValueError(f"Unknown log format: {fmt}")

    root = logging.getLogger(ROOT_LOGGER)
    for existing in [h for h in root.handlers if isinstance(h, StructuredHandler)]:
        root.removeHandler(existing)
    handler = StructuredHandler(stream, fmt)
    root.addHandler(handler)
    root.setLevel(LOG_LEVELS[level_key])
    root.propagate = False
    return handler


def _ensure_configured() -> None:
    root = logging.getLogger(ROOT_LOGGER)
    if not any(isinstance(h, StructuredHandler) for h in root.handlers):
        configure_logging()


# ════════════════════════════════════════════════════════════════════════════
# LOGGERS
# ════════════════════════════════════════════════════════════════════════════


class LedgerfoldLogger:
    """Logger bound to one component and layer; keyword arguments become context."""

    def __init__(self, name: str, layer: Layer):
        _ensure_configured()
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"{ROOT_LOGGER}.{layer.value}.{name}")

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(
            level,
            message,
            exc_info=exc_info,
            extra={
                "layer": self.layer.value,
                "operation": operation,
                "error_code": error_code,
                "duration_ms": duration_ms,
                "context": context,
            },
        )

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(self, message: str, **context: Any) -> None:
        self._log(logging.ERROR, message, **context)


def get_logger(name: str, layer: Layer) -> LedgerfoldLogger:
    return LedgerfoldLogger(name, layer)


# ════════════════════════════════════════════════════════════════════════════
# CORRELATION
# ════════════════════════════════════════════════════════════════════════════


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Bind ``correlation_id`` to the current context; pass the token to reset."""
    return correlation_id_var.set(correlation_id)


def reset_correlation_id(token: contextvars.Token) -> None:
    correlation_id_var.reset(token)


T = TypeVar("T")


def timed_operation(
    logger: LedgerfoldLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Log completion (info) or failure (warning) of the wrapped call with its duration."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            failed = False
            try:
                return func(*args, **kwargs)
            except Exception:
                failed = True
                raise
            finally:
                elapsed = round((time.monotonic() - start) * 1000, 3)
                log = logger.warning if failed else logger.info
                log(
                    f"Operation {operation_name} {'failed' if failed else 'completed'}",
                    operation=operation_name,
                    duration_ms=elapsed,
                )
        return wrapper
    return decorator
