from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator, Optional

# Set per HTTP request by the middleware and per webhook event by the workers;
# anything else logs with empty values.
_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_OPERATOR: ContextVar[Optional[str]] = ContextVar("operator", default=None)


def get_request_id() -> Optional[str]:
    return _REQUEST_ID.get()


def get_operator() -> Optional[str]:
    return _OPERATOR.get()


def _bind(request_id: Optional[str], operator: Optional[str]) -> tuple[str, Token, Token]:
    rid = (request_id or "").strip() or uuid.uuid4().hex
    op = (operator or "").strip() or None
    return rid, _REQUEST_ID.set(rid), _OPERATOR.set(op)


@contextmanager
def request_scope(request_id: Optional[str] = None, operator: Optional[str] = None) -> Iterator[str]:
    """Bind a request id (generated when missing) and operator for the enclosed block."""
    rid, rid_tok, op_tok = _bind(request_id, operator)
    try:
        yield rid
    finally:
        _OPERATOR.reset(op_tok)
        _REQUEST_ID.reset(rid_tok)
