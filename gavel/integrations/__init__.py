"""External integrations for payment processing."""
from .gateway import ChargeLookup, ChargeResult, PaymentGateway, RefundResult
from .stripe_gateway import StripeGateway, StripeGatewayError

__all__ = [
    "ChargeLookup",
    "ChargeResult",
    "PaymentGateway",
    "RefundResult",
    "StripeGateway",
    "StripeGatewayError",
]
