"""Console logging with UTC timestamps and the active runner's name.

Several strategy runners can share one process (one per account). Every
record carries the name of the runner whose batch is being processed, taken
from a context variable, so interleaved log lines stay attributable.
"""

from __future__ import annotations

import contextlib
import contextvars
import logging
import os
import time
from typing import Iterator

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(runner)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_HANDLER_NAME = "cycle-engine-root-handler"

_runner_name: contextvars.ContextVar[str] = contextvars.ContextVar("runner_name", default="-")


class RunnerContextFilter(logging.Filter):
    """Stamp records with the runner name from the current context."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "runner"):
            record.runner = current_runner()
        return True


@contextlib.contextmanager
def runner_context(name: str) -> Iterator[None]:
    """Attribute log records emitted inside the block to runner `name`."""
    token = _runner_name.set(name)
    try:
        yield
    finally:
        _runner_name.reset(token)


def current_runner() -> str:
    return _runner_name.get()


def _resolve_level(level: str | int | None) -> int:
    if level is None:
        env_level = os.getenv("LOG_LEVEL", "INFO").upper()
        return getattr(logging, env_level, logging.INFO)
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return int(level)


def setup_logging(level: str | int | None = None) -> logging.Logger:
    """Attach the shared console handler once and apply the level."""
    root = logging.getLogger()
    resolved_level = _resolve_level(level)

    handler = next((h for h in root.handlers if getattr(h, "name", "") == _HANDLER_NAME), None)
    if handler is None:
        handler = logging.StreamHandler()
        handler.name = _HANDLER_NAME
        formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
        formatter.converter = time.gmtime  # UTC
        handler.setFormatter(formatter)
        handler.addFilter(RunnerContextFilter())
        root.addHandler(handler)

    root.setLevel(resolved_level)
    handler.setLevel(resolved_level)
    # asyncio debug chatter drowns the batch log at DEBUG
    logging.getLogger("asyncio").setLevel(max(resolved_level, logging.INFO))
    return root


def get_logger(name: str) -> logging.Logger:
    """Return a module logger; the first call installs the console handler."""
    setup_logging()
    return logging.getLogger(name)
