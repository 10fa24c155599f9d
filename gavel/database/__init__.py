"""Database package for the auction engine."""
from .connection import get_db, get_session_factory, init_db
from .models import (
    AuctionItem,
    Base,
    Bid,
    BidKind,
    Bidder,
    CheckoutEvent,
    CheckoutItem,
    CheckoutSession,
    CheckoutStatus,
    Event,
    PaymentMethod,
    ReconciliationRun,
)

__all__ = [
    "AuctionItem",
    "Base",
    "Bid",
    "BidKind",
    "Bidder",
    "CheckoutEvent",
    "CheckoutItem",
    "CheckoutSession",
    "CheckoutStatus",
    "Event",
    "PaymentMethod",
    "ReconciliationRun",
    "get_db",
    "get_session_factory",
    "init_db",
]
