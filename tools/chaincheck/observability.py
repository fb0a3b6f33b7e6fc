"""
CHAINCHECK Observability

Logging and spans for the verification engine. Engine operations run
inside a correlation scope; every endpoint attempt, degradation and
tamper finding logged while it runs is one JSON line on stderr carrying
that correlation ID, and cascade attempts are also recorded as events on
the operation's span. A finished span is logged at debug level.

    {"timestamp": "...", "level": "warning", "logger": "chaincheck.locator.locator",
     "message": "Ledger unreachable", "correlation_id": "corr-3f2a...",
     "layer": "locator", "context": {"tx_hash": "...", "error": "..."}}
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import time
import traceback
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")
_active_span: contextvars.ContextVar[Optional["Span"]] = contextvars.ContextVar("active_span", default=None)

ROOT_LOGGER_NAME = "chaincheck"


class ChainCheckLayer(Enum):
    """Engine components; the middle segment of every logger name."""
    CASCADE = "cascade"
    WITNESS = "witness"
    LEDGER = "ledger"
    CHAIN = "chain"
    LOCATOR = "locator"
    CONTENT = "content"
    TAMPER = "tamper"
    ENGINE = "engine"


@dataclass
class Span:
    """One engine operation; the cascade appends an event per endpoint attempt."""
    name: str
    layer: str
    trace_id: str
    span_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    parent_span_id: str = ""
    started: float = field(default_factory=time.monotonic)
    finished: Optional[float] = None
    status: str = "ok"
    attributes: Dict[str, Any] = field(default_factory=dict)
    events: List[Dict[str, Any]] = field(default_factory=list)

    def record_event(self, name: str, **attributes: Any) -> None:
        self.events.append({
            "name": name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "attributes": attributes,
        })

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    @property
    def duration_ms(self) -> float:
        return ((self.finished or time.monotonic()) - self.started) * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "layer": self.layer,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "duration_ms": round(self.duration_ms, 2),
            "status": self.status,
            "attributes": self.attributes,
            "events": self.events,
        }


class Tracer:
    """Opens nested spans in the current context and logs each one it closes."""

    @contextmanager
    def span(self, name: str, layer: ChainCheckLayer, **attributes: Any) -> Iterator[Span]:
        parent = _active_span.get()
        span = Span(
            name=name,
            layer=layer.value,
            trace_id=parent.trace_id if parent else uuid.uuid4().hex,
            parent_span_id=parent.span_id if parent else "",
            attributes=dict(attributes),
        )
        token = _active_span.set(span)
        try:
            yield span
        except Exception as e:
            span.status = "error"
            span.attributes["exception_type"] = type(e).__name__
            raise
        finally:
            span.finished = time.monotonic()
            _active_span.reset(token)
            get_logger("tracer", layer).debug("Span finished", span=span.to_dict())

    def current_span(self) -> Optional[Span]:
        return _active_span.get()


def _event(record: logging.LogRecord) -> Dict[str, Any]:
    event: Dict[str, Any] = {
        "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        "level": record.levelname.lower(),
        "logger": record.name,
        "message": record.getMessage(),
        "correlation_id": correlation_id_var.get(),
        "layer": getattr(record, "layer", ""),
        "operation": getattr(record, "operation", ""),
        "duration_ms": getattr(record, "duration_ms", None),
        "error_code": getattr(record, "error_code", ""),
        "context": getattr(record, "context", {}),
    }
    if record.exc_info:
        event["exception"] = "".join(traceback.format_exception(*record.exc_info))
    return {k: v for k, v in event.items() if v not in (None, "", {})}


class StructuredHandler(logging.Handler):
    """One JSON object per line."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.stream.write(json.dumps(_event(record), default=str) + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class TextHandler(logging.Handler):
    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = _event(record)
            line = f"{event['timestamp']} {event['level'].upper():8} [{event.get('layer', '-')}] {event['message']}"
            context = event.get("context", {})
            if context:
                line += " " + " ".join(f"{k}={v}" for k, v in sorted(context.items()))
            if "exception" in event:
                line += "\n" + event["exception"]
            self.stream.write(line + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


def configure_logging(level: str = "info", fmt: str = "json", stream: Any = None) -> logging.Logger:
    """
    Install a single handler on the ``chaincheck`` root logger.

    Component loggers propagate to it, so calling this again replaces the
    handler rather than adding another.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        if isinstance(handler, (StructuredHandler, TextHandler)):
            root.removeHandler(handler)
    handler: logging.Handler = StructuredHandler(stream) if fmt == "json" else TextHandler(stream)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper()))
    return root


class ChainCheckLogger:
    """
    Logger bound to one engine component.

    Keyword arguments become the event's ``context``; the component's
    layer and the active correlation ID are added to every event.
    """

    def __init__(self, name: str, layer: ChainCheckLayer):
        self.layer = layer
        self._logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{layer.value}.{name}")

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
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(self, message: str, error_code: str = "", exc_info: bool = False, **context: Any) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)


def get_correlation_id() -> str:
    """The active correlation ID, creating one if none is set."""
    cid = correlation_id_var.get()
    if not cid:
        cid = f"corr-{uuid.uuid4().hex[:12]}"
        correlation_id_var.set(cid)
    return cid


@contextmanager
def correlation_scope() -> Iterator[str]:
    """
    Run a block under a correlation ID.

    An enclosing scope's ID is kept, so nested engine operations log under
    the outermost one.
    """
    cid = correlation_id_var.get() or f"corr-{uuid.uuid4().hex[:12]}"
    token = correlation_id_var.set(cid)
    try:
        yield cid
    finally:
        correlation_id_var.reset(token)


_tracer = Tracer()


def get_tracer() -> Tracer:
    return _tracer


def get_logger(name: str, layer: ChainCheckLayer) -> ChainCheckLogger:
    return ChainCheckLogger(name, layer)


T = TypeVar("T")


def timed_operation(
    logger: ChainCheckLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Run an engine operation in a correlation scope and log its duration."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            with correlation_scope():
                start = time.monotonic()
                failed = False
                try:
                    return func(*args, **kwargs)
                except Exception:
                    failed = True
                    raise
                finally:
                    logger._log(
                        logging.WARNING if failed else logging.INFO,
                        f"Operation {operation_name} {'failed' if failed else 'completed'}",
                        operation=operation_name,
                        duration_ms=(time.monotonic() - start) * 1000,
                    )
        return wrapper
    return decorator
