from .payment_gateway_client import (
    FakePaymentGatewayClient,
    PaymentGatewayClient,
    PaymentGatewayError,
)

__all__ = ["FakePaymentGatewayClient", "PaymentGatewayClient", "PaymentGatewayError"]
