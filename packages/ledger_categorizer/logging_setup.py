"""Logging for the categorizer and its batch jobs.

Library modules call ``get_logger(__name__)`` and log ``event key=value``
messages. The host (the CLI, a scheduler) calls :func:`configure_logging`
once to attach output.

Batch jobs (``categorize_pending``, rule learning, the weekly drift check)
wrap their work in :func:`job_context`. Every record emitted inside the
block, including records from worker threads started through ``pmap``,
carries a ``job=<name> org_id=<org>`` prefix so one run can be followed
across the hybrid, learning and drift loggers.
"""

from __future__ import annotations

import contextvars
import logging
import os
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import IO

ROOT_LOGGER = "ledger_categorizer"
LEVEL_ENV = "LEDGER_CATEGORIZER_LOG_LEVEL"
_FORMAT = "%(asctime)s %(levelname)s %(name)s %(job_context)s%(message)s"

_job_fields: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "ledger_categorizer_job_fields", default=()
)
_handler: logging.Handler | None = None


class JobContextFilter(logging.Filter):
    """Expose the active job fields as ``record.job_context``."""

    def filter(self, record: logging.LogRecord) -> bool:
        fields = _job_fields.get()
        record.job_context = "".join(f"{k}={v} " for k, v in fields)
        return True


def current_job_fields() -> dict[str, str]:
    return dict(_job_fields.get())


@contextmanager
def job_context(job: str, **fields: object) -> Iterator[str]:
    """Bind ``job``, a fresh ``run_id`` and ``fields`` to records in this block.

    Yields the run id. Nested blocks extend the outer fields.
    """

    run_id = uuid.uuid4().hex[:8]
    bound = dict(_job_fields.get())
    bound.update({"job": job, "run_id": run_id})
    bound.update({k: str(v) for k, v in fields.items() if v is not None})
    token = _job_fields.set(tuple(bound.items()))
    try:
        yield run_id
    finally:
        _job_fields.reset(token)


def resolve_level(level: int | str | None) -> int:
    """Level from the argument, else ``LEDGER_CATEGORIZER_LOG_LEVEL``, else INFO."""

    raw = level if level is not None else os.getenv(LEVEL_ENV)
    if raw is None or raw == "":
        return logging.INFO
    if isinstance(raw, int):
        return raw
    name = raw.strip().upper()
    if name.isdigit():
        return int(name)
    numeric = logging.getLevelName(name)
    if not isinstance(numeric, int):
        raise ValueError(f"unknown log level: {raw!r}")
    return numeric


def configure_logging(level: int | str | None = None, *, stream: IO[str] = sys.stderr) -> logging.Handler:
    """Attach the stream handler to the ``ledger_categorizer`` logger.

    A second call only updates the level and returns the existing handler.
    """

    global _handler
    resolved = resolve_level(level)
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(resolved)
    if _handler is not None:
        _handler.setLevel(resolved)
        return _handler

    for h in list(root.handlers):
        if isinstance(h, logging.NullHandler):
            root.removeHandler(h)
    handler = logging.StreamHandler(stream)
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler.addFilter(JobContextFilter())
    root.addHandler(handler)
    root.propagate = False
    _handler = handler
    return handler


def get_logger(name: str) -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if _handler is None and not root.handlers:
        root.addHandler(logging.NullHandler())
    return logging.getLogger(name)


__all__ = [
    "JobContextFilter",
    "configure_logging",
    "current_job_fields",
    "get_logger",
    "job_context",
    "resolve_level",
]
