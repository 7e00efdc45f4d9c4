# backend/slotpay/core/exceptions.py
"""
Domain-specific exceptions for the SlotPay orchestrator.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when input or business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class ForbiddenException(DomainException):
    """Raised when the caller lacks permission for an action."""

    status_code = status.HTTP_403_FORBIDDEN


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Specific business exceptions


class SlotConflictException(ConflictException):
    """Raised when the requested interval overlaps a held or confirmed booking."""

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message or "This time slot is no longer available",
            code="SLOT_CONFLICT",
            details=details or {},
        )


class InvalidSignatureException(DomainException):
    """Raised when a gateway payload fails its HMAC check."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: Optional[str] = None):
        super().__init__(
            message=message or "Payment signature verification failed",
            code="INVALID_SIGNATURE",
        )


class InvalidTransitionException(ConflictException):
    """Raised when an entity is asked to leave a state it cannot leave."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            message=f"Cannot move {entity} from {current} to {target}",
            code="INVALID_TRANSITION",
            details={"entity": entity, "from": current, "to": target},
        )


class GatewayException(ServiceException):
    """Raised when the payment gateway rejects or fails a call."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        *,
        retry_after_seconds: int = 30,
        upstream_status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = dict(details or {})
        merged.setdefault("retryable", True)
        merged.setdefault("retry_after_seconds", retry_after_seconds)
        if upstream_status is not None:
            merged.setdefault("upstream_status", upstream_status)
        super().__init__(message=message, code="GATEWAY_ERROR", details=merged)
        self.retry_after_seconds = retry_after_seconds
        self.upstream_status = upstream_status

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={"message": self.message, "code": self.code, "details": self.details},
            headers={"Retry-After": str(self.retry_after_seconds)},
        )


class InconsistentStateException(ServiceException):
    """
    Raised when money and bookings disagree (e.g. captured but unbooked).

    The HTTP form never leaks internals; operators get the details from logs.
    """

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": "An error occurred processing your request",
                "code": "INTERNAL_ERROR",
                "details": {},
            },
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """
