"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    CheckoutSessionResponse,
    CreateCheckoutRequest,
    PlaceBidRequest,
    ReceiptResponse,
    RefundRequest,
)

__all__ = [
    "app",
    "create_app",
    "CheckoutSessionResponse",
    "CreateCheckoutRequest",
    "PlaceBidRequest",
    "ReceiptResponse",
    "RefundRequest",
]
