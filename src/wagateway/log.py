"""
Logging setup with per-session context.

Handlers run as interleaved asyncio tasks, so the current session id is kept in
a `ContextVar` (tasks inherit a copy of the context at creation) and injected
into every record by `SessionIdFilter`.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Iterator
from contextvars import ContextVar

session_id_var: ContextVar[str | None] = ContextVar("session_id", default=None)

LOG_FORMAT = "%(asctime)s | [%(session_id)s] | %(name)s | %(levelname)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_session_id() -> str | None:
    return session_id_var.get()


@contextlib.contextmanager
def session_context(session_id: str | None) -> Iterator[None]:
    token = session_id_var.set(session_id)
    try:
        yield
    finally:
        session_id_var.reset(token)


class SessionIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = get_session_id() or "-"
        return True


def setup_logging(level: int | str = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(SessionIdFilter())

    root = logging.getLogger()
    root.setLevel(level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)
