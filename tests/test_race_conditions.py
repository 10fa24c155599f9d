"""
Race condition tests for concurrent bidding, numbering and checkout.

Each request runs in its own session against a file-backed SQLite database,
so the calls really overlap and only the database serialises them.
"""
import asyncio
import uuid
from decimal import Decimal
from typing import Any, AsyncGenerator, List

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gavel.core import bidders, catalog
from gavel.core.bid_ledger import BidLedger
from gavel.core.checkout import CheckoutManager
from gavel.core.exceptions import (
    BidTooLowError,
    BiddingClosedError,
    InvalidBidSelectionError,
)
from gavel.database.connection import build_engine, init_db, make_session_factory
from gavel.database.models import AuctionItem, Bid, Bidder, CheckoutSession, PaymentMethod


@pytest_asyncio.fixture
async def race_factory(
    tmp_path: Any, test_settings: Any
) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}", settings=test_settings)
    await init_db(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def race_item(race_factory: Any, ctx: Any, test_settings: Any) -> AuctionItem:
    async with race_factory() as db:
        event = await catalog.create_event(
            db, ctx, "Spring Gala", Decimal("2.5"), Decimal("0.30"), settings=test_settings
        )
        return await catalog.add_item(
            db,
            ctx,
            event.id,
            "Weekend at the lake house",
            starting_price=Decimal("100"),
            bid_increment=Decimal("10"),
        )


async def register_many(race_factory: Any, ctx: Any, event_id: uuid.UUID, count: int) -> List[Bidder]:
    async def register(n: int) -> Bidder:
        async with race_factory() as db:
            return await bidders.register_bidder(db, ctx, event_id, "Guest", f"Number{n}")

    return list(await asyncio.gather(*(register(n) for n in range(count))))


async def place_in_own_session(
    race_factory: Any, ctx: Any, item_id: uuid.UUID, bidder_id: uuid.UUID, amount: Decimal
) -> Bid:
    async with race_factory() as db:
        return await BidLedger().place_bid(db, ctx, item_id, bidder_id, amount)


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_bids_leave_one_winner_at_highest_price(
        self, race_factory: Any, ctx: Any, race_item: AuctionItem
    ) -> None:
        """
        Ten bidders bid 110..200 at once.

        Late low bids must be rejected, never accepted at a stale price.
        """
        people = await register_many(race_factory, ctx, race_item.event_id, 10)
        amounts = [Decimal(110 + 10 * n) for n in range(10)]

        results = await asyncio.gather(
            *(
                place_in_own_session(race_factory, ctx, race_item.id, person.id, amount)
                for person, amount in zip(people, amounts)
            ),
            return_exceptions=True,
        )

        accepted = [r for r in results if isinstance(r, Bid)]
        rejected = [r for r in results if not isinstance(r, Bid)]
        assert all(isinstance(r, BidTooLowError) for r in rejected)
        # 200 clears every possible minimum, so it always lands
        assert Decimal("200") in {bid.amount for bid in accepted}

        async with race_factory() as db:
            item = await db.get(AuctionItem, race_item.id)
            winners = (
                await db.execute(select(Bid).where(Bid.item_id == race_item.id, Bid.winning.is_(True)))
            ).scalars().all()
            stored = (await db.execute(select(Bid).where(Bid.item_id == race_item.id))).scalars().all()

        assert len(winners) == 1
        assert winners[0].amount == Decimal("200")
        assert item.current_price == Decimal("200")
        assert len(stored) == len(accepted)

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_registration_numbers_are_unique(
        self, race_factory: Any, ctx: Any, race_item: AuctionItem
    ) -> None:
        people = await register_many(race_factory, ctx, race_item.event_id, 12)

        numbers = sorted(person.bidder_number for person in people)
        assert numbers == [f"{n:03d}" for n in range(1, 13)]

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_overlapping_checkouts_only_one_succeeds(
        self, race_factory: Any, ctx: Any, race_item: AuctionItem, checkout: CheckoutManager
    ) -> None:
        (person,) = await register_many(race_factory, ctx, race_item.event_id, 1)
        bid = await place_in_own_session(race_factory, ctx, race_item.id, person.id, Decimal("110"))

        async def open_session(method: PaymentMethod) -> CheckoutSession:
            async with race_factory() as db:
                return await checkout.create_session(db, ctx, person.id, [bid.id], method)

        results = await asyncio.gather(
            open_session(PaymentMethod.CARD),
            open_session(PaymentMethod.CASH),
            return_exceptions=True,
        )

        created = [r for r in results if isinstance(r, CheckoutSession)]
        failed = [r for r in results if not isinstance(r, CheckoutSession)]
        assert len(created) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], InvalidBidSelectionError)

        async with race_factory() as db:
            sessions = (await db.execute(select(CheckoutSession))).scalars().all()
        assert len(sessions) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_outbid_and_checkout_never_both_succeed(
        self, race_factory: Any, ctx: Any, race_item: AuctionItem, checkout: CheckoutManager
    ) -> None:
        """Either the new bid wins and checkout fails, or checkout holds the item and the bid is refused."""
        first, second = await register_many(race_factory, ctx, race_item.event_id, 2)
        held = await place_in_own_session(race_factory, ctx, race_item.id, first.id, Decimal("110"))

        async def open_session() -> CheckoutSession:
            async with race_factory() as db:
                return await checkout.create_session(
                    db, ctx, first.id, [held.id], PaymentMethod.CASH
                )

        session_result, bid_result = await asyncio.gather(
            open_session(),
            place_in_own_session(race_factory, ctx, race_item.id, second.id, Decimal("150")),
            return_exceptions=True,
        )

        if isinstance(session_result, CheckoutSession):
            assert isinstance(bid_result, BiddingClosedError)
        else:
            assert isinstance(session_result, InvalidBidSelectionError)
            assert isinstance(bid_result, Bid)

        async with race_factory() as db:
            winners = (
                await db.execute(select(Bid).where(Bid.item_id == race_item.id, Bid.winning.is_(True)))
            ).scalars().all()
        assert len(winners) == 1
