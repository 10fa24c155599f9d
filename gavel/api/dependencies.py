"""
Request dependencies.

The tenant and acting staff member come from the X-Tenant-ID and
X-Staff-ID headers set by the routing layer in front of this service.
"""
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request

from gavel.core.bid_ledger import BidLedger
from gavel.core.checkout import CheckoutManager
from gavel.core.context import RequestContext
from gavel.core.exceptions import TenantContextMissingError
from gavel.core.reconciliation import ReconciliationEngine
from gavel.integrations.stripe_gateway import StripeGateway
from gavel.monitoring.health import HealthCheck
from gavel.monitoring.logging import bind_request_context


@dataclass
class Services:
    """Long-lived collaborators shared by all requests."""

    ledger: BidLedger
    checkout: CheckoutManager
    reconciliation: ReconciliationEngine
    health: HealthCheck


def build_services() -> Services:
    """Production wiring: Stripe gateway, settings-configured database and Redis."""
    gateway = StripeGateway()
    checkout = CheckoutManager(gateway=gateway)
    return Services(
        ledger=BidLedger(),
        checkout=checkout,
        reconciliation=ReconciliationEngine(gateway=gateway),
        health=HealthCheck(gateway=gateway),
    )


def get_services(request: Request) -> Services:
    services: Optional[Services] = getattr(request.app.state, "services", None)
    if services is None:
        services = build_services()
        request.app.state.services = services
    return services


async def get_request_context(
    request: Request,
    x_tenant_id: Optional[str] = Header(default=None),
    x_staff_id: Optional[str] = Header(default=None),
) -> RequestContext:
    """
    Build the request context from headers.

    Raises:
        TenantContextMissingError: If X-Tenant-ID is missing
    """
    if not x_tenant_id:
        raise TenantContextMissingError("X-Tenant-ID header is required")

    request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
    bind_request_context(request_id, tenant_id=x_tenant_id, actor_id=x_staff_id)
    return RequestContext(
        tenant_id=x_tenant_id,
        actor_id=x_staff_id,
        correlation_id=uuid.UUID(request_id),
    )
