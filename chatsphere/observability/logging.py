"""Root logging for the server and the console runtime.

Every record carries ``request_id`` and ``operator`` from the active
``request_scope``. Chatty client libraries (httpx, websockets, aiosqlite) are
held at WARNING unless verbose logging is on.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from .context import get_operator, get_request_id

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s rid=%(request_id)s op=%(operator)s %(message)s"
QUIET_LOGGERS = ("httpx", "httpcore", "websockets", "aiosqlite")


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        # Records from a scope set upstream (e.g. a forwarded rid) keep their values.
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id() or "-"
        if getattr(record, "operator", None) is None:
            record.operator = get_operator() or "-"
        return True


def _install(target, flt: ContextFilter) -> None:
    for existing in list(target.filters):
        if isinstance(existing, ContextFilter):
            target.removeFilter(existing)
    target.addFilter(flt)


def configure_logging(
    level: str = "INFO",
    *,
    verbose: bool = False,
    fmt: Optional[str] = None,
    quiet: Iterable[str] = QUIET_LOGGERS,
) -> ContextFilter:
    """Set up the root logger; calling it again replaces the filter instead of stacking it."""
    lvl = logging.getLevelName((level or "INFO").upper())
    if not isinstance(lvl, int):
        lvl = logging.INFO

    root = logging.getLogger()
    root.setLevel(lvl)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt or DEFAULT_FORMAT))
        root.addHandler(handler)

    flt = ContextFilter()
    # Root filters skip records propagated from child loggers; handlers see all of them.
    _install(root, flt)
    for handler in root.handlers:
        _install(handler, flt)

    for name in quiet:
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.WARNING)
    return flt
