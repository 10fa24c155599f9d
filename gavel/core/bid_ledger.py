"""
Bid ledger.

Decides which bid currently wins an item and keeps the item's current price
in step with it:

1. Lock the item row
2. Check the bidding window
3. Apply the rule for the bid's kind; a buy-now must also beat a standing winner
4. Insert the bid
5. For competing kinds: clear every other winning flag, mark the new bid
   winning and move the current price to its amount
6. Commit

Steps 4-5 happen in the transaction that holds the item lock, so two
concurrent bids on one item cannot both read a stale price and both win.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from gavel.core.clock import ensure_utc, utcnow
from gavel.core.context import RequestContext
from gavel.core.exceptions import (
    AuctionError,
    BidTooLowError,
    BidValidationError,
    BiddingClosedError,
    BuyNowUnavailableError,
    CannotModifyPaidBidError,
    NotFoundError,
)
from gavel.core.money import AmountLike, format_money, quantize
from gavel.database import queries
from gavel.database.models import AuctionItem, Bid, BidKind
from gavel.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def next_minimum_bid(item: AuctionItem) -> Decimal:
    """Current price (starting price if nothing has been bid) plus the increment."""
    current = item.current_price if item.current_price is not None else item.starting_price
    return quantize(current + item.bid_increment)


def is_bidding_open(item: AuctionItem, now: Optional[datetime] = None) -> bool:
    """Active and inside [bidding_starts_at, bidding_ends_at]; missing bounds are open."""
    if not item.active:
        return False
    now = ensure_utc(now) or utcnow()
    starts_at = ensure_utc(item.bidding_starts_at)
    ends_at = ensure_utc(item.bidding_ends_at)
    if starts_at is not None and now < starts_at:
        return False
    if ends_at is not None and now > ends_at:
        return False
    return True


def _check_standard_bid(item: AuctionItem, amount: Decimal) -> None:
    minimum = next_minimum_bid(item)
    if amount < minimum:
        raise BidTooLowError(amount=amount, minimum=minimum)


def _check_buy_now(item: AuctionItem, amount: Decimal) -> None:
    if item.buy_now_price is None or item.buy_now_price <= 0:
        raise BuyNowUnavailableError("Buy now is not available for this item.")
    if amount != item.buy_now_price:
        raise BuyNowUnavailableError(
            f"Buy now price is {format_money(item.buy_now_price)}, "
            f"not {format_money(amount)}."
        )


def _check_open_amount(item: AuctionItem, amount: Decimal) -> None:
    if amount < 0:
        raise BidValidationError("Amount must not be negative.")


KIND_RULES: Dict[BidKind, Callable[[AuctionItem, Decimal], None]] = {
    BidKind.BID: _check_standard_bid,
    BidKind.BUY_NOW: _check_buy_now,
    BidKind.RAFFLE_ENTRY: _check_open_amount,
    BidKind.DONATION: _check_open_amount,
}


def _parse_kind(kind: BidKind | str) -> BidKind:
    try:
        return BidKind(kind)
    except ValueError as e:
        raise BidValidationError(f"Unknown bid kind: {kind}") from e


def _parse_amount(amount: AmountLike) -> Decimal:
    try:
        return quantize(amount)
    except (TypeError, ValueError) as e:
        raise BidValidationError(str(e)) from e


class BidLedger:
    """
    Records bids and maintains each item's winning bid.

    Stateless between calls; all coordination happens through row locks.
    """

    async def _ensure_not_settled(
        self, db: AsyncSession, ctx: RequestContext, item: AuctionItem
    ) -> Optional[Bid]:
        """A winner that is paid, or being checked out, cannot be outbid. Returns the winner."""
        winner = await queries.get_winning_bid(db, tenant_id=ctx.tenant_id, item_id=item.id)
        if winner is None:
            return None
        if winner.paid:
            raise BiddingClosedError("This item has already been paid for.")
        held = await queries.active_session_bid_ids(
            db, tenant_id=ctx.tenant_id, bid_ids=[winner.id]
        )
        if held:
            raise BiddingClosedError("This item is being checked out.")
        return winner

    async def place_bid(
        self,
        db: AsyncSession,
        ctx: RequestContext,
        item_id: uuid.UUID,
        bidder_id: uuid.UUID,
        amount: AmountLike,
        kind: BidKind | str = BidKind.BID,
        now: Optional[datetime] = None,
    ) -> Bid:
        """
        Record a bid, buy-now purchase, raffle entry or donation.

        Args:
            db: Database session
            ctx: Request context
            item_id: Auction item
            bidder_id: Bidder placing the bid
            amount: Amount in dollars
            kind: Bid kind
            now: Clock override

        Returns:
            Bid: The persisted bid

        Raises:
            BiddingClosedError: Item inactive, outside its window, or settled
            BidTooLowError: Standard bid below the next minimum bid
            BuyNowUnavailableError: No buy-now price, amount differs from it, or
                bidding has already reached it
            BidValidationError: Malformed request
        """
        bid_kind = _parse_kind(kind)
        bid_amount = _parse_amount(amount)
        now = ensure_utc(now) or utcnow()

        try:
            item = await queries.get_item(
                db, tenant_id=ctx.tenant_id, item_id=item_id, for_update=True
            )
            if item is None:
                raise NotFoundError("AuctionItem", item_id)
            bidder = await queries.get_bidder(db, tenant_id=ctx.tenant_id, bidder_id=bidder_id)
            if bidder is None:
                raise NotFoundError("Bidder", bidder_id)
            if bidder.event_id != item.event_id:
                raise BidValidationError("Invalid bidder for this event.")
            if not bidder.active:
                raise BidValidationError("Bidder is not active.")

            if not is_bidding_open(item, now):
                raise BiddingClosedError("Bidding is not currently open for this item.")
            winner: Optional[Bid] = None
            if bid_kind.competes:
                winner = await self._ensure_not_settled(db, ctx, item)

            KIND_RULES[bid_kind](item, bid_amount)
            if bid_kind is BidKind.BUY_NOW and winner is not None and bid_amount <= winner.amount:
                # The price never moves down while a winner stands
                raise BuyNowUnavailableError(
                    f"Bidding has reached {format_money(winner.amount)}; "
                    "buy now is no longer available."
                )

            bid = Bid(
                id=uuid.uuid4(),
                tenant_id=ctx.tenant_id,
                event_id=item.event_id,
                item_id=item.id,
                bidder_id=bidder.id,
                amount=bid_amount,
                kind=bid_kind.value,
                winning=False,
                paid=False,
                created_by=ctx.actor_id,
                created_at=now,
            )

            if bid_kind.competes:
                await queries.clear_winning(db, tenant_id=ctx.tenant_id, item_id=item.id)
                bid.winning = True
                item.current_price = bid_amount

            db.add(bid)
            await db.commit()

        except AuctionError as e:
            await db.rollback()
            metrics.record_bid_rejected(bid_kind.value, e.error_code)
            logger.warning(
                "bid_rejected",
                tenant_id=ctx.tenant_id,
                item_id=str(item_id),
                bidder_id=str(bidder_id),
                kind=bid_kind.value,
                amount=str(bid_amount),
                reason=e.error_code,
                error=e.message,
            )
            raise
        except Exception:
            await db.rollback()
            raise

        metrics.record_bid_placed(bid_kind.value)
        logger.info(
            "bid_placed",
            tenant_id=ctx.tenant_id,
            correlation_id=str(ctx.correlation_id),
            item_id=str(item_id),
            bid_id=str(bid.id),
            bidder_id=str(bidder_id),
            kind=bid_kind.value,
            amount=str(bid_amount),
            winning=bid.winning,
            current_price=str(item.current_price),
        )
        return bid

    async def withdraw_bid(
        self, db: AsyncSession, ctx: RequestContext, bid_id: uuid.UUID
    ) -> None:
        """
        Delete an unpaid bid.

        When the deleted bid was winning, the new winner is the highest
        remaining bid/buy_now entry, ties going to the earliest; with none left
        the price returns to the starting price. Deleting a losing bid leaves
        the winner and price alone.

        Raises:
            CannotModifyPaidBidError: Bid is paid or held by an active checkout
        """
        try:
            bid = await queries.get_bid(db, tenant_id=ctx.tenant_id, bid_id=bid_id)
            if bid is None:
                raise NotFoundError("Bid", bid_id)

            # Item lock first, same order as place_bid.
            item = await queries.get_item(
                db, tenant_id=ctx.tenant_id, item_id=bid.item_id, for_update=True
            )
            bid = await queries.get_bid(
                db, tenant_id=ctx.tenant_id, bid_id=bid_id, for_update=True
            )
            if bid is None or item is None:
                raise NotFoundError("Bid", bid_id)

            if bid.paid:
                raise CannotModifyPaidBidError("Cannot delete a paid bid.")
            held = await queries.active_session_bid_ids(
                db, tenant_id=ctx.tenant_id, bid_ids=[bid.id]
            )
            if held:
                raise CannotModifyPaidBidError(
                    "Cannot delete a bid that is part of an active checkout session."
                )

            # Only the winner's removal moves the price; a paid or held
            # winner must keep its flag when a losing bid goes away.
            recompute = bid.winning
            await db.delete(bid)
            await db.flush()

            new_winner: Optional[Bid] = None
            if recompute:
                await queries.clear_winning(db, tenant_id=ctx.tenant_id, item_id=item.id)
                new_winner = await queries.highest_competing_bid(
                    db, tenant_id=ctx.tenant_id, item_id=item.id
                )
                if new_winner is not None:
                    new_winner.winning = True
                    item.current_price = new_winner.amount
                else:
                    item.current_price = item.starting_price

            await db.commit()

        except AuctionError as e:
            await db.rollback()
            logger.warning(
                "bid_withdrawal_rejected",
                tenant_id=ctx.tenant_id,
                bid_id=str(bid_id),
                reason=e.error_code,
                error=e.message,
            )
            raise
        except Exception:
            await db.rollback()
            raise

        metrics.record_bid_withdrawn()
        logger.info(
            "bid_withdrawn",
            tenant_id=ctx.tenant_id,
            correlation_id=str(ctx.correlation_id),
            bid_id=str(bid_id),
            item_id=str(item.id),
            new_winning_bid_id=str(new_winner.id) if new_winner else None,
            current_price=str(item.current_price),
        )

    # Same operation; staff screens call it deleting.
    delete_bid = withdraw_bid

    async def get_next_minimum_bid(
        self, db: AsyncSession, ctx: RequestContext, item_id: uuid.UUID
    ) -> Decimal:
        item = await queries.get_item(db, tenant_id=ctx.tenant_id, item_id=item_id)
        if item is None:
            raise NotFoundError("AuctionItem", item_id)
        return next_minimum_bid(item)
