"""
Tenant-scoped data access.

Every function takes a mandatory keyword-only tenant_id and filters on it.
There is no ambient tenant: callers thread it through from the request
context.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gavel.core.exceptions import TenantContextMissingError
from gavel.database.models import (
    AuctionItem,
    Bid,
    BidKind,
    Bidder,
    CheckoutItem,
    CheckoutSession,
    CheckoutStatus,
    Event,
)

COMPETING_KINDS = [kind.value for kind in BidKind if kind.competes]


def require_tenant(tenant_id: Optional[str]) -> str:
    if not tenant_id:
        raise TenantContextMissingError()
    return tenant_id


async def get_event(
    db: AsyncSession, *, tenant_id: str, event_id: uuid.UUID, for_update: bool = False
) -> Optional[Event]:
    stmt = select(Event).where(
        Event.tenant_id == require_tenant(tenant_id), Event.id == event_id
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_bidder(
    db: AsyncSession, *, tenant_id: str, bidder_id: uuid.UUID
) -> Optional[Bidder]:
    stmt = select(Bidder).where(
        Bidder.tenant_id == require_tenant(tenant_id), Bidder.id == bidder_id
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def list_bidder_numbers(
    db: AsyncSession, *, tenant_id: str, event_id: uuid.UUID
) -> List[str]:
    stmt = select(Bidder.bidder_number).where(
        Bidder.tenant_id == require_tenant(tenant_id), Bidder.event_id == event_id
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_item(
    db: AsyncSession, *, tenant_id: str, item_id: uuid.UUID, for_update: bool = False
) -> Optional[AuctionItem]:
    """
    Load an auction item.

    With for_update the row stays locked until the transaction ends, which
    serialises every bid placed on the item.
    """
    stmt = select(AuctionItem).where(
        AuctionItem.tenant_id == require_tenant(tenant_id), AuctionItem.id == item_id
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_bid(
    db: AsyncSession, *, tenant_id: str, bid_id: uuid.UUID, for_update: bool = False
) -> Optional[Bid]:
    stmt = select(Bid).where(Bid.tenant_id == require_tenant(tenant_id), Bid.id == bid_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_winning_bid(
    db: AsyncSession, *, tenant_id: str, item_id: uuid.UUID
) -> Optional[Bid]:
    stmt = select(Bid).where(
        Bid.tenant_id == require_tenant(tenant_id),
        Bid.item_id == item_id,
        Bid.winning.is_(True),
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def highest_competing_bid(
    db: AsyncSession, *, tenant_id: str, item_id: uuid.UUID
) -> Optional[Bid]:
    """Highest bid/buy_now entry; ties go to the earliest one."""
    stmt = (
        select(Bid)
        .where(
            Bid.tenant_id == require_tenant(tenant_id),
            Bid.item_id == item_id,
            Bid.kind.in_(COMPETING_KINDS),
        )
        .order_by(Bid.amount.desc(), Bid.created_at.asc(), Bid.id.asc())
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def clear_winning(
    db: AsyncSession,
    *,
    tenant_id: str,
    item_id: uuid.UUID,
    except_bid_id: Optional[uuid.UUID] = None,
) -> None:
    stmt = (
        update(Bid)
        .where(
            Bid.tenant_id == require_tenant(tenant_id),
            Bid.item_id == item_id,
            Bid.winning.is_(True),
        )
        .values(winning=False)
    )
    if except_bid_id is not None:
        stmt = stmt.where(Bid.id != except_bid_id)
    await db.execute(stmt)


async def active_session_bid_ids(
    db: AsyncSession, *, tenant_id: str, bid_ids: Iterable[uuid.UUID]
) -> Set[uuid.UUID]:
    """Bids already held by an active (pending/processing/completed) session."""
    ids = list(bid_ids)
    if not ids:
        return set()
    stmt = select(CheckoutItem.bid_id).where(
        CheckoutItem.tenant_id == require_tenant(tenant_id),
        CheckoutItem.bid_id.in_(ids),
        CheckoutItem.active.is_(True),
    )
    result = await db.execute(stmt)
    return set(result.scalars().all())


async def lock_checkout_bids(
    db: AsyncSession,
    *,
    tenant_id: str,
    bidder_id: uuid.UUID,
    bid_ids: Sequence[uuid.UUID],
) -> List[Tuple[Bid, str]]:
    """
    Lock the bidder's winning, unpaid bids among bid_ids.

    Returns (bid, item name) pairs; bids failing any condition are absent.
    """
    stmt = (
        select(Bid, AuctionItem.name)
        .join(AuctionItem, AuctionItem.id == Bid.item_id)
        .where(
            Bid.tenant_id == require_tenant(tenant_id),
            AuctionItem.tenant_id == tenant_id,
            Bid.bidder_id == bidder_id,
            Bid.id.in_(list(bid_ids)),
            Bid.winning.is_(True),
            Bid.paid.is_(False),
        )
        .order_by(Bid.created_at.asc(), Bid.id.asc())
        .with_for_update(of=Bid)
    )
    result = await db.execute(stmt)
    return [(bid, name) for bid, name in result.all()]


async def unpaid_winning_bids(
    db: AsyncSession, *, tenant_id: str, bidder_id: uuid.UUID
) -> List[Tuple[Bid, str]]:
    stmt = (
        select(Bid, AuctionItem.name)
        .join(AuctionItem, AuctionItem.id == Bid.item_id)
        .where(
            Bid.tenant_id == require_tenant(tenant_id),
            Bid.bidder_id == bidder_id,
            Bid.winning.is_(True),
            Bid.paid.is_(False),
        )
        .order_by(Bid.created_at.asc(), Bid.id.asc())
    )
    result = await db.execute(stmt)
    return [(bid, name) for bid, name in result.all()]


async def set_bids_paid(
    db: AsyncSession, *, tenant_id: str, bid_ids: Sequence[uuid.UUID], paid: bool
) -> int:
    """Flip the paid flag; returns the number of rows changed."""
    if not bid_ids:
        return 0
    stmt = (
        update(Bid)
        .where(
            Bid.tenant_id == require_tenant(tenant_id),
            Bid.id.in_(list(bid_ids)),
            Bid.paid.is_(not paid),
        )
        .values(paid=paid)
    )
    result = await db.execute(stmt)
    return result.rowcount


async def deactivate_checkout_items(
    db: AsyncSession, *, tenant_id: str, session_id: uuid.UUID
) -> None:
    stmt = (
        update(CheckoutItem)
        .where(
            CheckoutItem.tenant_id == require_tenant(tenant_id),
            CheckoutItem.session_id == session_id,
        )
        .values(active=False)
    )
    await db.execute(stmt)


async def get_checkout_session(
    db: AsyncSession,
    *,
    tenant_id: str,
    session_id: uuid.UUID,
    for_update: bool = False,
) -> Optional[CheckoutSession]:
    stmt = select(CheckoutSession).where(
        CheckoutSession.tenant_id == require_tenant(tenant_id),
        CheckoutSession.id == session_id,
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def stale_processing_sessions(
    db: AsyncSession, *, tenant_id: str, older_than: datetime
) -> List[CheckoutSession]:
    stmt = (
        select(CheckoutSession)
        .where(
            CheckoutSession.tenant_id == require_tenant(tenant_id),
            CheckoutSession.status == CheckoutStatus.PROCESSING.value,
            CheckoutSession.updated_at < older_than,
        )
        .order_by(CheckoutSession.updated_at.asc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def tenants_with_processing_sessions(db: AsyncSession) -> List[str]:
    """
    Tenants that have sessions in processing.

    The only query not scoped to a tenant: the reconciliation worker uses it
    to decide which tenants to sweep, then works tenant by tenant.
    """
    stmt = (
        select(CheckoutSession.tenant_id)
        .where(CheckoutSession.status == CheckoutStatus.PROCESSING.value)
        .distinct()
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def event_totals(
    db: AsyncSession, *, tenant_id: str, event_id: uuid.UUID
) -> Dict[str, Any]:
    stmt = select(
        func.count(CheckoutSession.id).label("count"),
        func.coalesce(func.sum(CheckoutSession.total_amount), 0).label("revenue"),
        func.coalesce(func.sum(CheckoutSession.platform_fee), 0).label("platform_fees"),
    ).where(
        CheckoutSession.tenant_id == require_tenant(tenant_id),
        CheckoutSession.event_id == event_id,
        CheckoutSession.status == CheckoutStatus.COMPLETED.value,
    )
    result = await db.execute(stmt)
    row = result.one()
    return {
        "count": row.count or 0,
        "revenue": Decimal(str(row.revenue)),
        "platform_fees": Decimal(str(row.platform_fees)),
    }
