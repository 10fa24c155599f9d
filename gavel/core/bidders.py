"""Bidder registration and sequential bidder numbers."""
import uuid
from typing import Iterable, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gavel.core.context import RequestContext
from gavel.core.exceptions import BidValidationError, NotFoundError
from gavel.database import queries
from gavel.database.models import Bidder

logger = structlog.get_logger(__name__)

NUMBER_WIDTH = 3


def format_bidder_number(value: int) -> str:
    """Zero-pad to three digits; wider numbers are left as they are."""
    return str(value).zfill(NUMBER_WIDTH)


def successor_number(existing: Iterable[str]) -> str:
    """One past the largest numeric bidder number. Non-numeric numbers are ignored."""
    highest = 0
    for number in existing:
        stripped = (number or "").strip()
        if stripped.isdigit():
            highest = max(highest, int(stripped))
    return format_bidder_number(highest + 1)


async def _lock_event_and_number(
    db: AsyncSession, ctx: RequestContext, event_id: uuid.UUID
) -> str:
    # The event row lock serialises every number allocation for the event.
    event = await queries.get_event(
        db, tenant_id=ctx.tenant_id, event_id=event_id, for_update=True
    )
    if event is None:
        raise NotFoundError("Event", event_id)
    existing = await queries.list_bidder_numbers(
        db, tenant_id=ctx.tenant_id, event_id=event_id
    )
    return successor_number(existing)


async def next_bidder_number(
    db: AsyncSession, ctx: RequestContext, event_id: uuid.UUID
) -> str:
    """
    Next free bidder number for an event ("001", "002", ... "999", "1000").

    Only a preview when called on its own: the lock is released when the
    caller's transaction ends. register_bidder allocates and inserts under
    the same lock.
    """
    return await _lock_event_and_number(db, ctx, event_id)


async def register_bidder(
    db: AsyncSession,
    ctx: RequestContext,
    event_id: uuid.UUID,
    first_name: str,
    last_name: str,
    email: Optional[str] = None,
    phone: Optional[str] = None,
) -> Bidder:
    """
    Register a bidder and assign the next bidder number.

    Raises:
        NotFoundError: Unknown event
        BidValidationError: Missing name, or the number was taken concurrently
    """
    if not first_name or not last_name:
        raise BidValidationError("First and last name are required.")

    try:
        number = await _lock_event_and_number(db, ctx, event_id)
        bidder = Bidder(
            id=uuid.uuid4(),
            tenant_id=ctx.tenant_id,
            event_id=event_id,
            bidder_number=number,
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone=phone,
            active=True,
        )
        db.add(bidder)
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        logger.error(
            "bidder_number_conflict",
            tenant_id=ctx.tenant_id,
            event_id=str(event_id),
            error=str(e.orig),
        )
        raise BidValidationError(
            "Bidder number was assigned concurrently; please retry."
        ) from e
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "bidder_registered",
        tenant_id=ctx.tenant_id,
        event_id=str(event_id),
        bidder_id=str(bidder.id),
        bidder_number=number,
    )
    return bidder
