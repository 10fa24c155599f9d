"""Events and auction items set up by staff before bidding opens."""
import uuid
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from gavel.config import Settings, get_settings
from gavel.core.clock import ensure_utc
from gavel.core.context import RequestContext
from gavel.core.exceptions import BidValidationError, NotFoundError
from gavel.core.fees import FeeConfig
from gavel.core.money import AmountLike, quantize
from gavel.database import queries
from gavel.database.models import AuctionItem, Event

logger = structlog.get_logger(__name__)


async def create_event(
    db: AsyncSession,
    ctx: RequestContext,
    name: str,
    fee_percentage: Optional[AmountLike] = None,
    fixed_fee: Optional[AmountLike] = None,
    settings: Optional[Settings] = None,
) -> Event:
    """
    Create an event, defaulting the fee configuration from settings.

    Raises:
        FeeConfigurationError: If the fees exceed the administrative caps
    """
    settings = settings or get_settings()
    config = FeeConfig.validated(
        fee_percentage if fee_percentage is not None else settings.default_platform_fee_percentage,
        fixed_fee if fixed_fee is not None else settings.default_fixed_platform_fee,
        max_percentage=settings.platform_fee_max_percentage,
        max_fixed_fee=settings.platform_fixed_fee_max,
    )
    event = Event(
        id=uuid.uuid4(),
        tenant_id=ctx.tenant_id,
        name=name,
        transaction_fee_percentage=config.percentage,
        fixed_transaction_fee=config.fixed_fee,
    )
    db.add(event)
    await db.commit()

    logger.info("event_created", tenant_id=ctx.tenant_id, event_id=str(event.id))
    return event


async def update_event_fees(
    db: AsyncSession,
    ctx: RequestContext,
    event_id: uuid.UUID,
    fee_percentage: AmountLike,
    fixed_fee: AmountLike,
    settings: Optional[Settings] = None,
) -> Event:
    """Change an event's fees. Sessions already created keep their totals."""
    settings = settings or get_settings()
    config = FeeConfig.validated(
        fee_percentage,
        fixed_fee,
        max_percentage=settings.platform_fee_max_percentage,
        max_fixed_fee=settings.platform_fixed_fee_max,
    )
    event = await queries.get_event(
        db, tenant_id=ctx.tenant_id, event_id=event_id, for_update=True
    )
    if event is None:
        raise NotFoundError("Event", event_id)
    event.transaction_fee_percentage = config.percentage
    event.fixed_transaction_fee = config.fixed_fee
    await db.commit()

    logger.info(
        "event_fees_updated",
        tenant_id=ctx.tenant_id,
        event_id=str(event_id),
        percentage=str(config.percentage),
        fixed_fee=str(config.fixed_fee),
    )
    return event


async def add_item(
    db: AsyncSession,
    ctx: RequestContext,
    event_id: uuid.UUID,
    name: str,
    starting_price: AmountLike,
    bid_increment: AmountLike,
    buy_now_price: Optional[AmountLike] = None,
    bidding_starts_at: Optional[datetime] = None,
    bidding_ends_at: Optional[datetime] = None,
    active: bool = True,
) -> AuctionItem:
    """Catalogue an item. Its current price starts at the starting price."""
    event = await queries.get_event(db, tenant_id=ctx.tenant_id, event_id=event_id)
    if event is None:
        raise NotFoundError("Event", event_id)

    start = quantize(starting_price)
    increment = quantize(bid_increment)
    buy_now = quantize(buy_now_price) if buy_now_price is not None else None
    if start < 0:
        raise BidValidationError("Starting price must not be negative")
    if increment <= 0:
        raise BidValidationError("Bid increment must be positive")
    if buy_now is not None and buy_now <= 0:
        raise BidValidationError("Buy-now price must be positive")
    starts_at = ensure_utc(bidding_starts_at)
    ends_at = ensure_utc(bidding_ends_at)
    if starts_at and ends_at and ends_at < starts_at:
        raise BidValidationError("Bidding must end after it starts")

    item = AuctionItem(
        id=uuid.uuid4(),
        tenant_id=ctx.tenant_id,
        event_id=event_id,
        name=name,
        starting_price=start,
        current_price=start,
        buy_now_price=buy_now,
        bid_increment=increment,
        bidding_starts_at=starts_at,
        bidding_ends_at=ends_at,
        active=active,
    )
    db.add(item)
    await db.commit()

    logger.info(
        "auction_item_created",
        tenant_id=ctx.tenant_id,
        event_id=str(event_id),
        item_id=str(item.id),
    )
    return item


async def rename_item(
    db: AsyncSession, ctx: RequestContext, item_id: uuid.UUID, name: str
) -> AuctionItem:
    """Rename an item. Checkout snapshots keep the old name."""
    item = await queries.get_item(db, tenant_id=ctx.tenant_id, item_id=item_id, for_update=True)
    if item is None:
        raise NotFoundError("AuctionItem", item_id)
    item.name = name
    await db.commit()
    return item
