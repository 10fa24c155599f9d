"""
Pydantic schemas for API request/response models.

Money is carried as decimal strings ("110.00") in both directions.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from gavel.database.models import BidKind, PaymentMethod


class CreateEventRequest(BaseModel):
    """Request schema for creating an event."""

    name: str = Field(..., min_length=1, max_length=255)
    fee_percentage: Optional[Decimal] = Field(
        default=None, description="Platform fee percentage (settings default if omitted)"
    )
    fixed_fee: Optional[Decimal] = Field(
        default=None, description="Fixed platform fee (settings default if omitted)"
    )


class EventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    transaction_fee_percentage: Decimal
    fixed_transaction_fee: Decimal


class CreateItemRequest(BaseModel):
    """Request schema for cataloguing an auction item."""

    name: str = Field(..., min_length=1, max_length=255)
    starting_price: Decimal = Field(..., ge=0)
    bid_increment: Decimal = Field(..., gt=0)
    buy_now_price: Optional[Decimal] = Field(default=None, gt=0)
    bidding_starts_at: Optional[datetime] = None
    bidding_ends_at: Optional[datetime] = None
    active: bool = True


class ItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_id: UUID
    name: str
    starting_price: Decimal
    current_price: Decimal
    buy_now_price: Optional[Decimal] = None
    bid_increment: Decimal
    bidding_starts_at: Optional[datetime] = None
    bidding_ends_at: Optional[datetime] = None
    active: bool


class NextMinimumBidResponse(BaseModel):
    item_id: UUID
    next_minimum_bid: Decimal


class RegisterBidderRequest(BaseModel):
    """Request schema for registering a bidder."""

    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=32)


class BidderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_id: UUID
    bidder_number: str
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None


class NextBidderNumberResponse(BaseModel):
    event_id: UUID
    next_bidder_number: str


class PlaceBidRequest(BaseModel):
    """Request schema for placing a bid."""

    item_id: UUID
    bidder_id: UUID
    amount: Decimal = Field(..., description="Amount in dollars, e.g. \"110.00\"")
    kind: BidKind = Field(default=BidKind.BID)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "item_id": "123e4567-e89b-12d3-a456-426614174000",
                    "bidder_id": "123e4567-e89b-12d3-a456-426614174001",
                    "amount": "110.00",
                    "kind": "bid",
                }
            ]
        }
    }


class BidResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    item_id: UUID
    bidder_id: UUID
    amount: Decimal
    kind: str
    winning: bool
    paid: bool
    created_by: Optional[str] = None
    created_at: datetime


class OwedBidResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    bid_id: UUID
    item_id: UUID
    item_name: str
    amount: Decimal
    kind: str


class UnpaidBidsResponse(BaseModel):
    bidder_id: UUID
    bids: List[OwedBidResponse]
    amount_owed: Decimal


class FeeBreakdownResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subtotal: Decimal
    tax_amount: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    total: Decimal


class PreviewLineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    bid_id: UUID
    item_name: str
    amount: Decimal


class CheckoutPreviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    bidder_id: UUID
    lines: List[PreviewLineResponse]
    fees: Optional[FeeBreakdownResponse] = None


class CreateCheckoutRequest(BaseModel):
    """Request schema for creating a checkout session."""

    bidder_id: UUID
    bid_ids: List[UUID] = Field(..., min_length=1)
    payment_method: PaymentMethod
    tax_amount: Decimal = Field(default=Decimal("0.00"), ge=0)


class CheckoutItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    bid_id: UUID
    item_name: str
    amount: Decimal
    active: bool


class CheckoutSessionResponse(BaseModel):
    """Response schema for a checkout session."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    reference: str
    bidder_id: UUID
    status: str
    payment_method: str
    subtotal: Decimal
    tax_amount: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    total_amount: Decimal
    external_payment_id: Optional[str] = None
    receipt_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    items: List[CheckoutItemResponse]


class ChargeCardRequest(BaseModel):
    source_token: str = Field(..., min_length=1, description="Card token from the reader or form")


class ReceiptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    session_id: UUID
    reference: str
    status: str
    payment_method: str
    total_amount: Decimal
    external_payment_id: Optional[str] = None
    receipt_url: Optional[str] = None
    completed_at: Optional[datetime] = None
    replayed: bool = False


class RefundRequest(BaseModel):
    """Request schema for refunding a session."""

    amount: Optional[Decimal] = Field(
        default=None, description="Refund amount (full refund if omitted)"
    )
    reason: Optional[str] = Field(default=None, max_length=500)


class ResolveReconciliationRequest(BaseModel):
    outcome: str = Field(..., description="'charged' or 'not_charged'")
    external_payment_id: Optional[str] = None

    @field_validator("outcome")
    @classmethod
    def validate_outcome(cls, v: str) -> str:
        if v not in ("charged", "not_charged"):
            raise ValueError("Outcome must be 'charged' or 'not_charged'")
        return v


class CheckoutEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_type: str
    event_data: Dict[str, Any]
    correlation_id: UUID
    actor_id: Optional[str] = None
    created_at: datetime


class EventRevenueResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: UUID
    completed_sessions: int
    revenue: Decimal
    platform_fees: Decimal


class ReconciliationResponse(BaseModel):
    """Response schema for a reconciliation run."""

    tenant_id: str
    run_id: int
    sessions_checked: int
    discrepancy_count: int
    discrepancies: List[Dict[str, Any]]
