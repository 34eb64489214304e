"""
Structured logging for the MYR exchange stack.

Every module logs through ``logging.getLogger(__name__)``; this module only
decides how the ``myr`` logger tree is rendered:

    text   human-oriented single lines on stderr (default for the CLI)
    json   one JSON object per line, with run correlation id and context

Context is attached with ``extra={"context": {...}}`` or the ``error_code``
extra for security aborts.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, TypeVar

ROOT_LOGGER = "myr"

run_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("run_id", default="")


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    run_id: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                run_id=run_id_var.get(),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            self.stream.write(event.to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class TextFormatter(logging.Formatter):
    """Plain text with context appended as ``key=value`` pairs."""

    def __init__(self) -> None:
        super().__init__("%(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "context", None) or {}
        if context:
            line += " " + " ".join(f"{k}={v}" for k, v in context.items())
        return line


def configure_logging(level: str = "warning", fmt: str = "text", stream: Any = None) -> logging.Logger:
    """Install a single handler on the ``myr`` logger tree.

    Calling it again replaces the previous handler, so the CLI can be invoked
    repeatedly in one process (tests) without duplicating output.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    for h in list(logger.handlers):
        if getattr(h, "_myr_handler", False):
            logger.removeHandler(h)

    if fmt == "json":
        handler: logging.Handler = StructuredHandler(stream)
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(TextFormatter())
    handler._myr_handler = True  # type: ignore[attr-defined]

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False
    return logger


def generate_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"


def start_run(run_id: Optional[str] = None) -> contextvars.Token:
    """Set the correlation id attached to every JSON log line of this run."""
    return run_id_var.set(run_id or generate_run_id())


T = TypeVar("T")


def timed_operation(
    logger: logging.Logger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.log(
                    logging.DEBUG if success else logging.WARNING,
                    "Operation %s %s", operation_name, "completed" if success else "failed",
                    extra={"operation": operation_name, "duration_ms": round(duration_ms, 3)},
                )
        wrapper.__name__ = getattr(func, "__name__", operation_name)
        wrapper.__doc__ = func.__doc__
        return wrapper
    return decorator
