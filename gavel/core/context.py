"""
Request-scoped context and the collaborators the core reads from.

A RequestContext is built per request and passed explicitly to every core
operation, so one process can serve many tenants at once.
"""
import uuid
from dataclasses import dataclass, field
from typing import Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from gavel.config import Settings, get_settings
from gavel.core.exceptions import NotFoundError
from gavel.core.fees import FeeConfig, GatewayFees
from gavel.database import queries


@dataclass(frozen=True)
class RequestContext:
    """Tenant and acting staff member for one request."""

    tenant_id: str
    actor_id: Optional[str] = None
    correlation_id: uuid.UUID = field(default_factory=uuid.uuid4)

    def __post_init__(self) -> None:
        queries.require_tenant(self.tenant_id)


class FeeConfigSource(Protocol):
    """Supplies an event's platform fee configuration. Read-only to the core."""

    async def current_fee_config(
        self, db: AsyncSession, ctx: RequestContext, event_id: uuid.UUID
    ) -> FeeConfig:
        ...


class EventFeeConfigSource:
    """
    Reads the fee configuration stored on the event row.

    Caps were enforced when the event was configured; a later change to the
    caps does not invalidate events that were already set up.
    """

    async def current_fee_config(
        self, db: AsyncSession, ctx: RequestContext, event_id: uuid.UUID
    ) -> FeeConfig:
        event = await queries.get_event(db, tenant_id=ctx.tenant_id, event_id=event_id)
        if event is None:
            raise NotFoundError("Event", event_id)
        return FeeConfig(
            percentage=event.transaction_fee_percentage,
            fixed_fee=event.fixed_transaction_fee,
        )


def gateway_fees(settings: Optional[Settings] = None) -> GatewayFees:
    settings = settings or get_settings()
    return GatewayFees(
        percentage=settings.gateway_fee_percentage,
        fixed_fee=settings.gateway_fixed_fee,
    )
