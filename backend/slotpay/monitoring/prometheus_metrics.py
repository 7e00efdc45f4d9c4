"""
Prometheus metrics for SlotPay.

Service timings come from the @measure_operation decorator; the domain
counters below track the money-and-slot paths operators alert on.
"""

from threading import Lock
from time import monotonic
from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Custom registry so test runs and multiple app instances don't collide
REGISTRY = CollectorRegistry()

http_request_duration_seconds = Histogram(
    "slotpay_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

service_operation_duration_seconds = Histogram(
    "slotpay_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "slotpay_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "slotpay_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

slot_claims_total = Counter(
    "slotpay_slot_claims_total",
    "Slot claim attempts by outcome",
    ["outcome"],  # claimed | conflict | replayed | released
    registry=REGISTRY,
)

slot_claim_mutex_total = Counter(
    "slotpay_slot_claim_mutex_total",
    "Redis slot mutex operations",
    ["action", "status"],
    registry=REGISTRY,
)

signature_failures_total = Counter(
    "slotpay_signature_failures_total",
    "Rejected gateway payloads by channel",
    ["channel"],  # checkout | webhook
    registry=REGISTRY,
)

payment_verifications_total = Counter(
    "slotpay_payment_verifications_total",
    "Payment verification outcomes",
    ["outcome"],
    registry=REGISTRY,
)

compensating_refunds_total = Counter(
    "slotpay_compensating_refunds_total",
    "Automatic refunds raised for captured payments without a slot",
    ["trigger"],  # verify | webhook | cancellation
    registry=REGISTRY,
)

refund_outcomes_total = Counter(
    "slotpay_refund_outcomes_total",
    "Refund request terminal and intermediate outcomes",
    ["status"],
    registry=REGISTRY,
)

gateway_call_duration_seconds = Histogram(
    "slotpay_gateway_call_duration_seconds",
    "Payment gateway call latency",
    ["operation", "status"],
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0),
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    _cache_lock: Lock = Lock()
    _cache_payload: Optional[bytes] = None
    _cache_ts: Optional[float] = None
    _cache_ttl_seconds: float = 1.0

    @staticmethod
    def record_http_request(method: str, endpoint: str, duration: float, status_code: int) -> None:
        http_request_duration_seconds.labels(
            method=method, endpoint=endpoint, status_code=str(status_code)
        ).observe(duration)
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'OrderIssuer')
            operation: Operation/method name (e.g., 'issue_order')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_slot_claim(outcome: str) -> None:
        slot_claims_total.labels(outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_slot_mutex(action: str, status: str) -> None:
        slot_claim_mutex_total.labels(action=action, status=status).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_signature_failure(channel: str) -> None:
        signature_failures_total.labels(channel=channel).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_payment_verification(outcome: str) -> None:
        payment_verifications_total.labels(outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_compensating_refund(trigger: str) -> None:
        compensating_refunds_total.labels(trigger=trigger).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_refund_outcome(status: str) -> None:
        refund_outcomes_total.labels(status=status).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def observe_gateway_call(operation: str, status: str, duration: float) -> None:
        gateway_call_duration_seconds.labels(operation=operation, status=status).observe(
            max(duration, 0.0)
        )
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format, cached briefly."""
        now = monotonic()
        payload = PrometheusMetrics._cache_payload
        ts = PrometheusMetrics._cache_ts
        if payload is not None and ts is not None and (now - ts) <= PrometheusMetrics._cache_ttl_seconds:
            return payload

        with PrometheusMetrics._cache_lock:
            PrometheusMetrics._cache_payload = cast(bytes, generate_latest(REGISTRY))
            PrometheusMetrics._cache_ts = monotonic()
            return PrometheusMetrics._cache_payload

    @staticmethod
    def get_content_type() -> str:
        return cast(str, CONTENT_TYPE_LATEST)

    @staticmethod
    def _invalidate_cache() -> None:
        with PrometheusMetrics._cache_lock:
            PrometheusMetrics._cache_ts = None
            PrometheusMetrics._cache_payload = None


# Singleton instance
prometheus_metrics = PrometheusMetrics()
