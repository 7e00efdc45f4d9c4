"""Shared error translation for v1 routes."""

from typing import NoReturn

from ...core.exceptions import DomainException


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exception to HTTP exception."""
    raise exc.to_http_exception() from exc
