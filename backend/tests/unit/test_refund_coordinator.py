"""
Unit tests for RefundCoordinator: submission caps, admin decisions,
gateway failures and reconciliation with gateway-reported status.
"""

from decimal import Decimal

import pytest

from slotpay.core.exceptions import (
    ForbiddenException,
    GatewayException,
    InvalidTransitionException,
    NotFoundException,
    ServiceException,
    ValidationException,
)
from slotpay.models.booking import Booking, BookingStatus
from slotpay.models.payment import Payment, PaymentStatus
from slotpay.models.refund_request import RefundStatus
from slotpay.principal import Actor
from slotpay.services.refund_coordinator import RefundCoordinator
from tests.helpers import ADMIN, CUSTOMER, OTHER_CUSTOMER, local_slot

REASON = "The session was cut short by the provider"


@pytest.fixture
def paid(book):
    order, result = book(local_slot(10))
    return order


@pytest.fixture
def customer():
    return Actor.customer(CUSTOMER)


@pytest.fixture
def admin():
    return Actor.admin(ADMIN)


class TestSubmit:
    def test_defaults_to_full_amount(self, refunds, paid, customer):
        refund = refunds.submit_refund(paid.payment_id, customer, reason=REASON)

        assert refund.status == RefundStatus.PENDING.value
        assert refund.amount == Decimal("500.00")
        assert refund.is_automatic is False
        assert refund.requested_by == CUSTOMER
        assert refund.booking_id == paid.booking_id

    def test_partial_requests_are_capped_by_capture(self, refunds, paid, customer):
        refunds.submit_refund(paid.payment_id, customer, reason=REASON, amount=Decimal("200.00"))
        refunds.submit_refund(paid.payment_id, customer, reason=REASON, amount=Decimal("300.00"))

        with pytest.raises(ValidationException) as exc_info:
            refunds.submit_refund(paid.payment_id, customer, reason=REASON)
        assert exc_info.value.code == "REFUND_AMOUNT_INVALID"

    def test_amount_above_capture(self, refunds, paid, customer):
        with pytest.raises(ValidationException) as exc_info:
            refunds.submit_refund(paid.payment_id, customer, reason=REASON, amount=Decimal("500.01"))
        assert exc_info.value.code == "REFUND_EXCEEDS_CAPTURED"
        assert exc_info.value.details == {"requested": "500.01", "available": "500.00"}

    def test_reason_too_short(self, refunds, paid, customer):
        with pytest.raises(ValidationException) as exc_info:
            refunds.submit_refund(paid.payment_id, customer, reason="  meh  ")
        assert exc_info.value.code == "REFUND_REASON_TOO_SHORT"

    def test_only_the_payer_or_admin(self, refunds, paid, admin):
        with pytest.raises(ForbiddenException):
            refunds.submit_refund(paid.payment_id, Actor.customer(OTHER_CUSTOMER), reason=REASON)

        assert refunds.submit_refund(paid.payment_id, admin, reason=REASON).requested_by_role == "admin"

    def test_uncaptured_payment(self, refunds, order_issuer, provider, service, customer):
        order = order_issuer.issue_order(CUSTOMER, provider.id, service.id, local_slot(12))

        with pytest.raises(ValidationException) as exc_info:
            refunds.submit_refund(order.payment_id, customer, reason=REASON)
        assert exc_info.value.code == "PAYMENT_NOT_CAPTURED"

    def test_unknown_payment(self, refunds, customer):
        with pytest.raises(NotFoundException):
            refunds.submit_refund("missing", customer, reason=REASON)


class TestApprove:
    def test_full_refund_settles_payment_and_booking(self, db, refunds, gateway, paid, customer, admin):
        refund = refunds.submit_refund(paid.payment_id, customer, reason=REASON)

        refund = refunds.approve_refund(refund.id, admin, note="Goodwill")

        assert refund.status == RefundStatus.PROCESSED.value
        assert refund.processed_at is not None
        assert refund.admin_response["action"] == "approve"
        assert refund.admin_response["reason"] == "Goodwill"
        assert refund.attempt_count == 1
        assert gateway.calls[-1] == ("create_refund", {"payment_id": "pay_test0001", "key": refund.id})

        payment = db.get(Payment, paid.payment_id)
        assert payment.status == PaymentStatus.REFUNDED.value
        assert payment.refund_amount == Decimal("500.00")
        assert db.get(Booking, paid.booking_id).status == BookingStatus.CANCELLED.value

    def test_partial_refund_keeps_payment_captured(self, db, refunds, paid, customer, admin):
        refund = refunds.submit_refund(paid.payment_id, customer, reason=REASON, amount=Decimal("200.00"))

        refunds.approve_refund(refund.id, admin)

        payment = db.get(Payment, paid.payment_id)
        assert payment.status == PaymentStatus.CAPTURED.value
        assert payment.refund_amount == Decimal("200.00")

    def test_customer_cannot_approve(self, refunds, paid, customer):
        refund = refunds.submit_refund(paid.payment_id, customer, reason=REASON)

        with pytest.raises(ForbiddenException):
            refunds.approve_refund(refund.id, customer)

    def test_approve_twice(self, refunds, paid, customer, admin):
        refund = refunds.submit_refund(paid.payment_id, customer, reason=REASON)
        refunds.approve_refund(refund.id, admin)

        with pytest.raises(InvalidTransitionException):
            refunds.approve_refund(refund.id, admin)


class TestReject:
    def test_reason_required(self, refunds, paid, customer, admin):
        refund = refunds.submit_refund(paid.payment_id, customer, reason=REASON)

        with pytest.raises(ValidationException) as exc_info:
            refunds.reject_refund(refund.id, admin, "")
        assert exc_info.value.code == "REJECTION_REASON_REQUIRED"

    def test_rejected_amount_is_released(self, refunds, gateway, paid, customer, admin):
        refund = refunds.submit_refund(paid.payment_id, customer, reason=REASON)

        rejected = refunds.reject_refund(refund.id, admin, "Session was delivered in full")

        assert rejected.status == RefundStatus.REJECTED.value
        assert rejected.admin_response["action"] == "reject"
        assert gateway.refund_count() == 0
        assert refunds.submit_refund(paid.payment_id, customer, reason=REASON).amount == Decimal("500.00")

    def test_processed_cannot_be_rejected(self, refunds, paid, customer, admin):
        refund = refunds.submit_refund(paid.payment_id, customer, reason=REASON)
        refunds.approve_refund(refund.id, admin)

        with pytest.raises(InvalidTransitionException):
            refunds.reject_refund(refund.id, admin, "Too late to reject")


class TestGatewayFailures:
    def test_failed_submission_keeps_the_amount_reserved(self, refunds, gateway, paid, customer, admin):
        refund = refunds.submit_refund(paid.payment_id, customer, reason=REASON)
        gateway.fail_next("create_refund")

        with pytest.raises(GatewayException):
            refunds.approve_refund(refund.id, admin)

        failed = refunds.get_refund(refund.id, admin)
        assert failed.status == RefundStatus.FAILED.value
        assert failed.failure_reason
        with pytest.raises(ValidationException):
            refunds.submit_refund(paid.payment_id, customer, reason=REASON)

    def test_retry_reuses_the_idempotency_key(self, refunds, gateway, paid, customer, admin):
        refund = refunds.submit_refund(paid.payment_id, customer, reason=REASON)
        gateway.fail_next("create_refund")
        with pytest.raises(GatewayException):
            refunds.approve_refund(refund.id, admin)

        retried = refunds.retry_refund(refund.id, admin)

        assert retried.status == RefundStatus.PROCESSED.value
        assert retried.attempt_count == 2
        keys = [call[1]["key"] for call in gateway.calls if call[0] == "create_refund"]
        assert keys == [refund.id, refund.id]

    def test_only_failed_refunds_can_be_retried(self, refunds, paid, customer, admin):
        refund = refunds.submit_refund(paid.payment_id, customer, reason=REASON)

        with pytest.raises(InvalidTransitionException):
            refunds.retry_refund(refund.id, admin)


class TestGatewayUpdates:
    @pytest.fixture
    def slow_gateway(self, gateway):
        gateway.refund_status = "pending"
        return gateway

    def test_pending_gateway_refund_stays_processing(self, refunds, slow_gateway, paid, customer, admin):
        refund = refunds.submit_refund(paid.payment_id, customer, reason=REASON)

        refund = refunds.approve_refund(refund.id, admin)

        assert refund.status == RefundStatus.PROCESSING.value
        assert refund.gateway_refund_id in slow_gateway.refunds
        assert refund.gateway_refund_status == "pending"

    def test_processed_update_finalizes(self, db, refunds, slow_gateway, paid, customer, admin):
        refund = refunds.approve_refund(refunds.submit_refund(paid.payment_id, customer, reason=REASON).id, admin)

        updated = refunds.apply_gateway_update(status="processed", gateway_refund_id=refund.gateway_refund_id)

        assert updated.status == RefundStatus.PROCESSED.value
        assert db.get(Payment, paid.payment_id).status == PaymentStatus.REFUNDED.value

    def test_repeated_terminal_status_is_a_no_op(self, refunds, slow_gateway, paid, customer, admin):
        refund = refunds.approve_refund(refunds.submit_refund(paid.payment_id, customer, reason=REASON).id, admin)
        refunds.apply_gateway_update(status="processed", gateway_refund_id=refund.gateway_refund_id)

        again = refunds.apply_gateway_update(status="processed", gateway_refund_id=refund.gateway_refund_id)

        assert again.status == RefundStatus.PROCESSED.value
        with pytest.raises(InvalidTransitionException):
            refunds.apply_gateway_update(status="failed", gateway_refund_id=refund.gateway_refund_id)

    def test_failed_update_marks_refund_failed(self, refunds, slow_gateway, paid, customer, admin):
        refund = refunds.approve_refund(refunds.submit_refund(paid.payment_id, customer, reason=REASON).id, admin)

        failed = refunds.apply_gateway_update(
            status="failed", refund_id=refund.id, failure_reason="Bank account closed"
        )

        assert failed.status == RefundStatus.FAILED.value
        assert failed.failure_reason == "Bank account closed"

    def test_late_success_reopens_a_failed_refund(self, refunds, gateway, paid, customer, admin):
        refund = refunds.submit_refund(paid.payment_id, customer, reason=REASON)
        gateway.fail_next("create_refund")
        with pytest.raises(GatewayException):
            refunds.approve_refund(refund.id, admin)

        settled = refunds.apply_gateway_update(status="processed", refund_id=refund.id, gateway_refund_id="rfnd_late")

        assert settled.status == RefundStatus.PROCESSED.value
        assert settled.gateway_refund_id == "rfnd_late"

    def test_unknown_refund(self, refunds):
        with pytest.raises(NotFoundException):
            refunds.apply_gateway_update(status="processed", gateway_refund_id="rfnd_missing")

    def test_poll_settles_acknowledged_refunds(self, refunds, slow_gateway, paid, customer, admin):
        refund = refunds.approve_refund(refunds.submit_refund(paid.payment_id, customer, reason=REASON).id, admin)
        assert refunds.poll_processing_refunds() == 0

        slow_gateway.settle_refund(refund.gateway_refund_id)

        assert refunds.poll_processing_refunds() == 1
        assert refunds.get_refund(refund.id, admin).status == RefundStatus.PROCESSED.value


class TestAutomaticRefunds:
    def test_process_refund_leaves_customer_requests_for_an_admin(self, refunds, gateway, paid, customer):
        refund = refunds.submit_refund(paid.payment_id, customer, reason=REASON)

        assert refunds.process_refund(refund.id).status == RefundStatus.PENDING.value
        assert gateway.refund_count() == 0

    def test_dispatch_without_gateway(self, db, clock, paid, customer, admin):
        coordinator = RefundCoordinator(db, now_fn=clock)
        refund = coordinator.submit_refund(paid.payment_id, customer, reason=REASON)

        with pytest.raises(ServiceException) as exc_info:
            coordinator.approve_refund(refund.id, admin)
        assert exc_info.value.code == "GATEWAY_NOT_CONFIGURED"


class TestLookups:
    def test_payer_lists_refunds(self, refunds, paid, customer):
        refunds.submit_refund(paid.payment_id, customer, reason=REASON, amount=Decimal("100.00"))
        refunds.submit_refund(paid.payment_id, customer, reason=REASON, amount=Decimal("50.00"))

        assert len(refunds.list_for_payment(paid.payment_id, customer)) == 2

    def test_others_cannot_list_or_read(self, refunds, paid, customer):
        refund = refunds.submit_refund(paid.payment_id, customer, reason=REASON)
        stranger = Actor.customer(OTHER_CUSTOMER)

        with pytest.raises(ForbiddenException):
            refunds.list_for_payment(paid.payment_id, stranger)
        with pytest.raises(ForbiddenException):
            refunds.get_refund(refund.id, stranger)

    def test_unknown_payment_or_refund(self, refunds, admin):
        with pytest.raises(NotFoundException):
            refunds.list_for_payment("missing", admin)
        with pytest.raises(NotFoundException) as exc_info:
            refunds.get_refund("missing", admin)
        assert exc_info.value.code == "REFUND_NOT_FOUND"
