# backend/slotpay/tasks/booking_tasks.py
"""
Periodic housekeeping for the booking and refund lifecycle.

Every task opens its own session and is safe to run concurrently with the
API and with another worker: the work it picks up is claimed under the
same locks the request path uses.
"""

import logging
from typing import Any, Dict

from sqlalchemy.orm import Session

from slotpay.api.dependencies.services import get_payment_gateway
from slotpay.core.timezone_utils import utc_now
from slotpay.database import SessionLocal
from slotpay.services.booking_ledger import BookingLedger
from slotpay.services.outbox_dispatcher import OutboxDispatcher
from slotpay.services.refund_coordinator import RefundCoordinator
from slotpay.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="slotpay.tasks.booking_tasks.release_expired_reservations")  # type: ignore[misc]
def release_expired_reservations(self: Any) -> Dict[str, Any]:
    """Free every hold whose TTL passed without a verified payment."""
    db: Session = SessionLocal()
    try:
        released = BookingLedger(db).release_expired_reservations()
    finally:
        db.close()
    if released:
        logger.info("Released expired reservations", extra={"released": released})
    return {"released": released, "processed_at": utc_now().isoformat()}


@celery_app.task(bind=True, name="slotpay.tasks.booking_tasks.dispatch_outbox_events")  # type: ignore[misc]
def dispatch_outbox_events(self: Any, limit: int | None = None) -> Dict[str, Any]:
    """Deliver due outbox events (compensating and cancellation refunds)."""
    db: Session = SessionLocal()
    try:
        delivered = OutboxDispatcher(db, get_payment_gateway()).dispatch_due(limit)
    finally:
        db.close()
    return {"delivered": delivered, "processed_at": utc_now().isoformat()}


@celery_app.task(bind=True, name="slotpay.tasks.booking_tasks.poll_processing_refunds")  # type: ignore[misc]
def poll_processing_refunds(self: Any, limit: int | None = None) -> Dict[str, Any]:
    """Ask the gateway about refunds still processing, in case a webhook never arrived."""
    db: Session = SessionLocal()
    try:
        settled = RefundCoordinator(db, get_payment_gateway()).poll_processing_refunds(limit)
    finally:
        db.close()
    return {"settled": settled, "processed_at": utc_now().isoformat()}
