"""Read-only balances and totals for staff screens."""
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import List

from sqlalchemy.ext.asyncio import AsyncSession

from gavel.core.context import RequestContext
from gavel.core.exceptions import NotFoundError
from gavel.core.money import ZERO
from gavel.database import queries


@dataclass
class OwedBid:
    bid_id: uuid.UUID
    item_id: uuid.UUID
    item_name: str
    amount: Decimal
    kind: str


@dataclass
class EventRevenue:
    event_id: uuid.UUID
    completed_sessions: int
    revenue: Decimal
    platform_fees: Decimal


async def unpaid_winning_bids(
    db: AsyncSession, ctx: RequestContext, bidder_id: uuid.UUID
) -> List[OwedBid]:
    """Winning, unpaid bids of a bidder, oldest first."""
    rows = await queries.unpaid_winning_bids(db, tenant_id=ctx.tenant_id, bidder_id=bidder_id)
    return [
        OwedBid(
            bid_id=bid.id,
            item_id=bid.item_id,
            item_name=name,
            amount=bid.amount,
            kind=bid.kind,
        )
        for bid, name in rows
    ]


async def amount_owed(
    db: AsyncSession, ctx: RequestContext, bidder_id: uuid.UUID
) -> Decimal:
    """Sum of a bidder's unpaid winning bids, before tax and fees."""
    bidder = await queries.get_bidder(db, tenant_id=ctx.tenant_id, bidder_id=bidder_id)
    if bidder is None:
        raise NotFoundError("Bidder", bidder_id)
    owed = await unpaid_winning_bids(db, ctx, bidder_id)
    return sum((bid.amount for bid in owed), ZERO)


async def event_revenue(
    db: AsyncSession, ctx: RequestContext, event_id: uuid.UUID
) -> EventRevenue:
    """Totals over an event's completed checkout sessions."""
    event = await queries.get_event(db, tenant_id=ctx.tenant_id, event_id=event_id)
    if event is None:
        raise NotFoundError("Event", event_id)
    totals = await queries.event_totals(db, tenant_id=ctx.tenant_id, event_id=event_id)
    return EventRevenue(
        event_id=event_id,
        completed_sessions=totals["count"],
        revenue=totals["revenue"].quantize(Decimal("0.01")),
        platform_fees=totals["platform_fees"].quantize(Decimal("0.01")),
    )
