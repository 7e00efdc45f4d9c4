"""Request-scoped identifiers shared between middleware, services and log records."""

from __future__ import annotations

from contextvars import ContextVar, Token
import logging
from typing import Optional

import ulid

_request_id_var: ContextVar[str] = ContextVar("slotpay_request_id", default="")


def bind_request_id(incoming: Optional[str]) -> Token[str]:
    """Bind the caller's X-Request-ID, or a fresh ULID when absent."""
    return _request_id_var.set(incoming or str(ulid.ULID()))


def unbind_request_id(token: Token[str]) -> None:
    _request_id_var.reset(token)


def current_request_id(default: str = "no-request") -> str:
    return _request_id_var.get() or default


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = current_request_id()
        return True


def attach_request_id_filter(logger: Optional[logging.Logger] = None) -> None:
    target = logger or logging.getLogger()
    for handler in target.handlers:
        handler.addFilter(RequestIdFilter())
