"""devflow logging helpers.

Provides configure_logging, get_logger, task correlation context and the
track_performance decorator. Delegates to Python's standard logging library.
"""

import asyncio
import functools
import json
import logging
import sys
import time
from contextvars import ContextVar
from typing import Any, Callable, Optional, Union

_task_id_var: ContextVar[Optional[str]] = ContextVar("task_id", default=None)

ROOT_LOGGER = "devflow"


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_task_context(task_id: Optional[str]) -> None:
    """Attach a task id to every log record emitted from the current context."""
    _task_id_var.set(task_id)


def get_task_id() -> Optional[str]:
    return _task_id_var.get()


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with the task correlation id when present."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        task_id = getattr(record, "task_id", None) or _task_id_var.get()
        if task_id:
            payload["task_id"] = task_id
        if record.exc_info and record.exc_info[1] is not None:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class TaskContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "task_id", None):
            record.task_id = _task_id_var.get() or "-"
        return True


def configure_logging(level: Union[int, str] = "INFO", fmt: str = "text") -> logging.Logger:
    """Install a single stream handler on the devflow logger."""
    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        if getattr(handler, "_devflow_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler._devflow_handler = True  # type: ignore[attr-defined]
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.addFilter(TaskContextFilter())
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s [%(task_id)s] %(message)s")
        )
    root.addHandler(handler)
    root.setLevel(level)
    return root


def track_performance(func: Optional[Callable] = None, *, operation: str = ""):
    """Decorator that logs execution time of a function."""
    def decorator(fn: Callable) -> Callable:
        op = operation or fn.__qualname__

        @functools.wraps(fn)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                return fn(*args, **kwargs)
            finally:
                elapsed = time.perf_counter() - start
                logging.getLogger(fn.__module__).debug(
                    "%s completed in %.3fs", op, elapsed
                )

        @functools.wraps(fn)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                return await fn(*args, **kwargs)
            finally:
                elapsed = time.perf_counter() - start
                logging.getLogger(fn.__module__).debug(
                    "%s completed in %.3fs", op, elapsed
                )

        if asyncio.iscoroutinefunction(fn):
            return async_wrapper
        return sync_wrapper

    if func is not None:
        return decorator(func)
    return decorator
