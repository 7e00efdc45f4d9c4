# backend/slotpay/services/gateway_webhook_service.py
"""
Gateway webhook intake.

The raw body is authenticated before it is parsed. Each delivery is written
to the webhook ledger keyed by the gateway's event id, so redeliveries are
acknowledged without being applied twice.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import json
import logging
from typing import Any, Callable, Optional, Union

from pydantic import SecretStr, ValidationError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.crypto import verify_webhook_signature
from ..core.exceptions import (
    DomainException,
    InvalidSignatureException,
    InvalidTransitionException,
    NotFoundException,
    RepositoryException,
    ServiceException,
    ValidationException,
)
from ..core.timezone_utils import utc_now
from ..models.webhook_event import WebhookEvent, WebhookEventStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..schemas.payment import GatewayWebhookEnvelope
from .base import BaseService
from .payment_verifier import PaymentVerifier, validation_details
from .refund_coordinator import RefundCoordinator

logger = logging.getLogger(__name__)

WEBHOOK_SOURCE = "gateway"


@dataclass(frozen=True)
class WebhookOutcome:
    status: str
    event: Optional[str] = None
    duplicate: bool = False


class GatewayWebhookService(BaseService):
    def __init__(
        self,
        db: Session,
        *,
        webhook_secret: Optional[Union[str, SecretStr]] = None,
        key_secret: Optional[Union[str, SecretStr]] = None,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        super().__init__(db)
        self._webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.gateway_webhook_secret
        )
        self._now_fn = now_fn
        self.webhook_repository = RepositoryFactory.create_webhook_event_repository(db)
        self.payment_verifier = PaymentVerifier(db, key_secret=key_secret, now_fn=now_fn)
        self.refund_coordinator = RefundCoordinator(db, now_fn=now_fn)

    @BaseService.measure_operation("handle_webhook")
    def handle(
        self, raw_body: bytes, signature: Optional[str], event_id: Optional[str] = None
    ) -> WebhookOutcome:
        """Authenticate, de-duplicate and apply one webhook delivery."""
        try:
            valid = verify_webhook_signature(raw_body, signature or "", self._webhook_secret)
        except ValueError as exc:
            raise ServiceException("Webhook signing secret is not configured") from exc
        if not valid:
            prometheus_metrics.record_signature_failure("webhook")
            self.logger.warning(
                "Rejected gateway webhook with invalid signature",
                extra={"event": "security.invalid_signature", "channel": "webhook"},
            )
            raise InvalidSignatureException("Webhook signature verification failed")

        try:
            body = json.loads(raw_body)
            envelope = GatewayWebhookEnvelope.model_validate(body)
        except json.JSONDecodeError as exc:
            raise ValidationException("Webhook body is not valid JSON", code="INVALID_PAYLOAD") from exc
        except ValidationError as exc:
            raise ValidationException(
                "Malformed webhook body",
                code="INVALID_PAYLOAD",
                details={"errors": validation_details(exc)},
            ) from exc

        key = event_id or self._fallback_event_id(envelope)
        existing = self.webhook_repository.get_by_source_event(WEBHOOK_SOURCE, key)
        if existing is not None and existing.status in (
            WebhookEventStatus.PROCESSED,
            WebhookEventStatus.IGNORED,
        ):
            self.logger.info("Duplicate webhook delivery", extra={"webhook_event_id": key})
            return WebhookOutcome(status=existing.status, event=envelope.event, duplicate=True)

        if existing is None:
            try:
                with self.transaction():
                    record = self.webhook_repository.record(
                        source=WEBHOOK_SOURCE, event_id=key, event_type=envelope.event, payload=body
                    )
            except RepositoryException:
                # A concurrent delivery of the same event got the ledger row first.
                return WebhookOutcome(status=WebhookEventStatus.RECEIVED, event=envelope.event, duplicate=True)
            record_id = record.id
        else:
            record_id = existing.id

        try:
            status, entity_type, entity_id = self._route(envelope)
        except InvalidTransitionException as exc:
            # The gateway is reporting something our ledger has already moved past.
            self.logger.warning(
                "Webhook conflicts with recorded state",
                extra={"webhook_event_id": key, "webhook_type": envelope.event, "error": exc.message},
            )
            self._finish(record_id, WebhookEventStatus.IGNORED, error=exc.message)
            return WebhookOutcome(status=WebhookEventStatus.IGNORED, event=envelope.event)
        except DomainException as exc:
            self._finish(record_id, WebhookEventStatus.FAILED, error=exc.message)
            raise

        self._finish(record_id, status, entity_type=entity_type, entity_id=entity_id)
        return WebhookOutcome(status=status, event=envelope.event)

    @staticmethod
    def _fallback_event_id(envelope: GatewayWebhookEnvelope) -> str:
        entity: Any = envelope.payment_entity() or envelope.refund_entity()
        entity_id = entity.id if entity is not None else "unknown"
        return f"{envelope.event}:{entity_id}"

    def _route(self, envelope: GatewayWebhookEnvelope) -> tuple[str, Optional[str], Optional[str]]:
        event = envelope.event
        if event in ("payment.captured", "payment.failed"):
            entity = envelope.payment_entity()
            if entity is None or not entity.order_id:
                return WebhookEventStatus.IGNORED, None, None
            if event == "payment.captured":
                try:
                    result = self.payment_verifier.capture(entity.order_id, entity.id, trigger="webhook")
                except NotFoundException:
                    return WebhookEventStatus.IGNORED, None, None
                return WebhookEventStatus.PROCESSED, "payment", result.payment_id
            payment = self.payment_verifier.record_failed_payment(
                entity.order_id, entity.id, entity.error_description
            )
            if payment is None:
                return WebhookEventStatus.IGNORED, None, None
            return WebhookEventStatus.PROCESSED, "payment", payment.id

        if event in ("refund.processed", "refund.failed"):
            entity = envelope.refund_entity()
            if entity is None:
                return WebhookEventStatus.IGNORED, None, None
            note_id = entity.notes.get("refund_request_id")
            try:
                refund = self.refund_coordinator.apply_gateway_update(
                    status=event.split(".", 1)[1],
                    refund_id=str(note_id) if note_id else None,
                    gateway_refund_id=entity.id,
                    failure_reason=entity.error_description,
                )
            except NotFoundException:
                return WebhookEventStatus.IGNORED, None, None
            return WebhookEventStatus.PROCESSED, "refund_request", refund.id

        self.logger.info("Ignoring unhandled webhook event", extra={"webhook_type": event})
        return WebhookEventStatus.IGNORED, None, None

    def _finish(
        self,
        record_id: str,
        status: str,
        *,
        error: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> None:
        with self.transaction():
            record: Optional[WebhookEvent] = self.webhook_repository.get_by_id(record_id)
            if record is None:
                return
            record.status = status
            record.processing_error = error
            record.related_entity_type = entity_type
            record.related_entity_id = entity_id
            record.processed_at = self._now_fn()
            self.webhook_repository.flush()
