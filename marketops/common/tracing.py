# marketops/common/tracing.py
"""
Trace ids for log correlation.

Activities bind the task id, the HTTP middleware binds the request id; every
LogRecord carries the bound value as ``trace_id`` ("-" outside any scope).
"""
from __future__ import annotations

import logging
import os
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Iterator, Optional, Union

_TRACE_ID: ContextVar[Optional[str]] = ContextVar("marketops_trace_id", default=None)
_FACTORY_INSTALLED = False

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [trace=%(trace_id)s]: %(message)s"


def get_trace_id() -> Optional[str]:
    return _TRACE_ID.get()


@contextmanager
def trace_scope(value: Optional[str]) -> Iterator[str]:
    """Bind ``value`` (or a fresh uuid) as the trace id for the enclosed block."""
    token = _TRACE_ID.set(value or uuid.uuid4().hex)
    try:
        yield _TRACE_ID.get()
    finally:
        _TRACE_ID.reset(token)


def _install_logrecord_factory() -> None:
    global _FACTORY_INSTALLED
    if _FACTORY_INSTALLED:
        return
    previous: Callable[..., logging.LogRecord] = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs) -> logging.LogRecord:
        record = previous(*args, **kwargs)
        if not hasattr(record, "trace_id"):
            record.trace_id = get_trace_id() or "-"
        return record

    logging.setLogRecordFactory(record_factory)
    _FACTORY_INSTALLED = True


def setup_logging(level: Union[int, str, None] = None) -> None:
    """Install the trace-id factory and a root handler; level defaults to $LOG_LEVEL or INFO."""
    _install_logrecord_factory()
    resolved = level if level is not None else os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
