"""
Base Service Pattern for SlotPay

Provides common functionality for all service classes including:
- Transaction management
- Audit trail writes for status transitions
- Performance monitoring
"""

from contextlib import contextmanager
from functools import wraps
import logging
import time
from typing import Any, Callable, Iterator, Mapping, Optional, TypeVar, cast

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import ServiceException
from ..core.request_context import current_request_id
from ..models.audit_log import AuditLog
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class BaseService:
    """
    Base class for all service layer components.

    Services own the unit of work: repositories flush, services commit.
    """

    def __init__(self, db: Session):
        """
        Initialize base service.

        Args:
            db: Database session
        """
        self.db = db
        self.logger = logging.getLogger(self.__class__.__name__)
        self.audit_repository = RepositoryFactory.create_audit_repository(db)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Context manager for database transactions.

        Usage:
            with self.transaction():
                self.db.add(entity)
                # commit happens on exit, rollback on any exception
        """
        try:
            yield self.db
            self.db.commit()
        except SQLAlchemyError as e:
            self.logger.error(f"Transaction failed: {str(e)}")
            self.db.rollback()
            raise ServiceException(f"Database operation failed: {str(e)}")
        except Exception:
            self.db.rollback()
            raise

    def record_transition(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        actor: Any | None,
        before: Optional[Mapping[str, Any]],
        after: Optional[Mapping[str, Any]],
    ) -> None:
        """Stage an audit row in the current transaction."""
        if not settings.audit_enabled:
            return
        self.audit_repository.write(
            AuditLog.from_change(
                entity_type,
                entity_id,
                action,
                actor,
                before,
                after,
                request_id=current_request_id(default="") or None,
            )
        )

    @staticmethod
    def measure_operation(operation_name: str) -> Callable[[F], F]:
        """
        Decorator to measure operation performance.

        Usage:
            @BaseService.measure_operation("issue_order")
            def issue_order(self, ...):
                ...
        """

        def decorator(func: F) -> F:
            def _finish(self: Any, started: float, error_type: Optional[str]) -> None:
                elapsed = time.time() - started
                if elapsed > 1.0:
                    self.logger.warning(
                        f"Slow operation detected: {operation_name} took {elapsed:.2f}s"
                    )
                prometheus_metrics.record_service_operation(
                    service=self.__class__.__name__,
                    operation=operation_name,
                    duration=elapsed,
                    status="error" if error_type else "success",
                    error_type=error_type,
                )

            @wraps(func)
            def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
                started = time.time()
                error_type: Optional[str] = None
                try:
                    return func(self, *args, **kwargs)
                except Exception as e:
                    error_type = type(e).__name__
                    raise
                finally:
                    _finish(self, started, error_type)

            return cast(F, wrapper)

        return decorator
