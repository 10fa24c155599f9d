"""SQLAlchemy database models for the bidding and checkout engine."""
import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from gavel.core.clock import utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(12, 2)
# Up to 999.9999; FeeConfig rejects finer precision
FeePercentage = Numeric(7, 4)


class BidKind(str, enum.Enum):
    """Kinds of entry recorded against an item."""

    BID = "bid"
    BUY_NOW = "buy_now"
    RAFFLE_ENTRY = "raffle_entry"
    DONATION = "donation"

    @property
    def competes(self) -> bool:
        """Only auction bids and buy-now purchases compete for winning."""
        return self in (BidKind.BID, BidKind.BUY_NOW)


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    CASH = "cash"
    CHECK = "check"


class CheckoutStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Event(Base):
    """
    Fundraising event.

    Carries the platform fee configuration applied at checkout.
    """

    __tablename__ = "events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    transaction_fee_percentage: Mapped[Decimal] = mapped_column(FeePercentage, nullable=False)
    fixed_transaction_fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("transaction_fee_percentage >= 0", name="non_negative_fee_percentage"),
        CheckConstraint("fixed_transaction_fee >= 0", name="non_negative_fixed_fee"),
    )

    def __repr__(self) -> str:
        return f"<Event(id={self.id}, tenant_id={self.tenant_id}, name={self.name})>"


class Bidder(Base):
    """Registered bidder. The bidder number is never reassigned."""

    __tablename__ = "bidders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("events.id"), nullable=False, index=True
    )
    bidder_number: Mapped[str] = mapped_column(String(16), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("event_id", "bidder_number", name="uq_bidders_event_number"),
    )

    @property
    def display_name(self) -> str:
        return f"{self.bidder_number} - {self.first_name} {self.last_name}"

    def __repr__(self) -> str:
        return f"<Bidder(id={self.id}, number={self.bidder_number})>"


class AuctionItem(Base):
    """
    Catalogued lot.

    current_price always equals the winning bid's amount, or starting_price
    when there is no winning bid. Only the bid ledger writes it.
    """

    __tablename__ = "auction_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("events.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    starting_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    current_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    buy_now_price: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    bid_increment: Mapped[Decimal] = mapped_column(Money, nullable=False)
    bidding_starts_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    bidding_ends_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint("starting_price >= 0", name="non_negative_starting_price"),
        CheckConstraint("bid_increment > 0", name="positive_bid_increment"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuctionItem(id={self.id}, name={self.name}, "
            f"current_price={self.current_price})>"
        )


class Bid(Base):
    """
    Bid, buy-now purchase, raffle entry or donation.

    At most one bid/buy_now row per item has winning = true.
    """

    __tablename__ = "bids"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("events.id"), nullable=False)
    item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("auction_items.id"), nullable=False, index=True
    )
    bidder_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bidders.id"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    winning: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="non_negative_bid_amount"),
        CheckConstraint(
            "kind IN ('bid', 'buy_now', 'raffle_entry', 'donation')",
            name="valid_bid_kind",
        ),
        Index("idx_bids_bidder_winning_paid", "bidder_id", "winning", "paid"),
        Index("idx_bids_item_amount", "item_id", "amount"),
    )

    @property
    def bid_kind(self) -> BidKind:
        return BidKind(self.kind)

    def __repr__(self) -> str:
        return (
            f"<Bid(id={self.id}, item_id={self.item_id}, amount={self.amount}, "
            f"kind={self.kind}, winning={self.winning}, paid={self.paid})>"
        )


class CheckoutSession(Base):
    """
    Settlement of a bidder's winning bids.

    Totals are computed once at creation and never recomputed.
    """

    __tablename__ = "checkout_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("events.id"), nullable=False)
    bidder_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bidders.id"), nullable=False, index=True
    )
    reference: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    processing_fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    external_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    receipt_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[List["CheckoutItem"]] = relationship(
        back_populates="session", lazy="selectin", order_by="CheckoutItem.id"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'refunded')",
            name="valid_checkout_status",
        ),
        CheckConstraint(
            "payment_method IN ('card', 'cash', 'check')", name="valid_payment_method"
        ),
        Index("idx_checkout_sessions_tenant_status", "tenant_id", "status"),
    )

    @property
    def bid_ids(self) -> List[uuid.UUID]:
        return [item.bid_id for item in self.items]

    def __repr__(self) -> str:
        return (
            f"<CheckoutSession(id={self.id}, reference={self.reference}, "
            f"total={self.total_amount}, status={self.status})>"
        )


class CheckoutItem(Base):
    """
    Point-in-time snapshot of one bid in a checkout session.

    A bid may be held by at most one active item row; the flag is cleared
    when the session fails or is refunded.
    """

    __tablename__ = "checkout_items"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("checkout_sessions.id"), nullable=False, index=True
    )
    bid_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("bids.id"), nullable=False)
    item_name: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    session: Mapped[CheckoutSession] = relationship(back_populates="items")

    __table_args__ = (
        Index(
            "uq_checkout_items_active_bid",
            "bid_id",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active"),
        ),
    )

    def __repr__(self) -> str:
        return f"<CheckoutItem(session_id={self.session_id}, bid_id={self.bid_id})>"


class CheckoutEvent(Base):
    """
    Checkout audit trail.

    One row per state transition, written in the transaction that made it.
    Immutable once written.
    """

    __tablename__ = "checkout_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    session_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (Index("idx_checkout_events_type", "event_type"),)

    def __repr__(self) -> str:
        return (
            f"<CheckoutEvent(id={self.id}, session_id={self.session_id}, "
            f"type={self.event_type})>"
        )


class ReconciliationRun(Base):
    """
    Result of one reconciliation sweep for a tenant.

    Lists sessions whose gateway outcome disagrees with, or is unknown to,
    the local record.
    """

    __tablename__ = "reconciliation_runs"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    sessions_checked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discrepancy_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'completed', 'failed')",
            name="valid_reconciliation_status",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<ReconciliationRun(id={self.id}, tenant_id={self.tenant_id}, "
            f"status={self.status})>"
        )
