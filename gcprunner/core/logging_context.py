"""
Run fields attached to every log record emitted while a run is active.

    with run_context(job_id="flow-task-x1y2", backend="batch"):
        ...
        bind_job(handle.name, resumed=handle.resumed)
        logger.info("carries job_id, backend, job_name and resumed")

Threads started with contextvars.copy_context() inside the block (the log
tail worker) keep the fields that were bound when they started.
"""

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Dict, Iterator, Mapping, Optional

_run_fields: ContextVar[Mapping[str, str]] = ContextVar("gcprunner_run_fields", default={})


def current_fields() -> Dict[str, str]:
    return dict(_run_fields.get())


def _extend(fields: Mapping[str, Optional[object]]) -> None:
    merged = dict(_run_fields.get())
    merged.update({key: str(value) for key, value in fields.items() if value is not None})
    _run_fields.set(merged)


class ContextFilter(logging.Filter):
    """Copies the active run's fields onto each record; explicit extras win."""

    def filter(self, record):
        for key, value in _run_fields.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


@contextmanager
def run_context(job_id: str, backend: str, **extra: Optional[str]) -> Iterator[None]:
    """
    Bind job_id, backend and any non-None extra fields until the block exits.

    Fields bound inside the block, through nested run_context calls or
    bind_job, are dropped on exit as well.
    """
    token = _run_fields.set(dict(_run_fields.get()))
    try:
        _extend({"job_id": job_id, "backend": backend, **extra})
        yield
    finally:
        _run_fields.reset(token)


def bind_job(job_name: str, resumed: bool = False) -> None:
    """Record the remote resource being polled; only meaningful inside run_context."""
    _extend({"job_name": job_name, "resumed": "true" if resumed else "false"})
