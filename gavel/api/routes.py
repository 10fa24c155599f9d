"""
API routes for bidding and checkout.

Domain errors propagate to the AuctionError handler in main; routes only
translate between schemas and core calls.
"""
from typing import Any, Dict, List
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from gavel.core import bidders as bidder_registry
from gavel.core import catalog, reporting
from gavel.core.context import RequestContext
from gavel.database.connection import get_db

from .dependencies import Services, get_request_context, get_services
from .schemas import (
    BidderResponse,
    BidResponse,
    ChargeCardRequest,
    CheckoutEventResponse,
    CheckoutPreviewResponse,
    CheckoutSessionResponse,
    CreateCheckoutRequest,
    CreateEventRequest,
    CreateItemRequest,
    EventResponse,
    EventRevenueResponse,
    ItemResponse,
    NextBidderNumberResponse,
    NextMinimumBidResponse,
    OwedBidResponse,
    PlaceBidRequest,
    ReceiptResponse,
    ReconciliationResponse,
    RefundRequest,
    RegisterBidderRequest,
    ResolveReconciliationRequest,
    UnpaidBidsResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
event_router = APIRouter(prefix="/events", tags=["events"])
item_router = APIRouter(prefix="/items", tags=["items"])
bid_router = APIRouter(prefix="/bids", tags=["bids"])
bidder_router = APIRouter(prefix="/bidders", tags=["bidders"])
checkout_router = APIRouter(prefix="/checkout/sessions", tags=["checkout"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


# ---------------------------------------------------------------------------
# Events, items, bidders
# ---------------------------------------------------------------------------


@event_router.post("", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def create_event(
    request: CreateEventRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> EventResponse:
    event = await catalog.create_event(
        db, ctx, request.name, fee_percentage=request.fee_percentage, fixed_fee=request.fixed_fee
    )
    return EventResponse.model_validate(event)


@event_router.post(
    "/{event_id}/items", response_model=ItemResponse, status_code=status.HTTP_201_CREATED
)
async def add_item(
    event_id: UUID,
    request: CreateItemRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> ItemResponse:
    item = await catalog.add_item(
        db,
        ctx,
        event_id,
        request.name,
        starting_price=request.starting_price,
        bid_increment=request.bid_increment,
        buy_now_price=request.buy_now_price,
        bidding_starts_at=request.bidding_starts_at,
        bidding_ends_at=request.bidding_ends_at,
        active=request.active,
    )
    return ItemResponse.model_validate(item)


@event_router.post(
    "/{event_id}/bidders", response_model=BidderResponse, status_code=status.HTTP_201_CREATED
)
async def register_bidder(
    event_id: UUID,
    request: RegisterBidderRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> BidderResponse:
    bidder = await bidder_registry.register_bidder(
        db,
        ctx,
        event_id,
        request.first_name,
        request.last_name,
        email=request.email,
        phone=request.phone,
    )
    return BidderResponse.model_validate(bidder)


@event_router.get("/{event_id}/next-bidder-number", response_model=NextBidderNumberResponse)
async def next_bidder_number(
    event_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> NextBidderNumberResponse:
    number = await bidder_registry.next_bidder_number(db, ctx, event_id)
    return NextBidderNumberResponse(event_id=event_id, next_bidder_number=number)


@event_router.get("/{event_id}/revenue", response_model=EventRevenueResponse)
async def event_revenue(
    event_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> EventRevenueResponse:
    revenue = await reporting.event_revenue(db, ctx, event_id)
    return EventRevenueResponse.model_validate(revenue)


@item_router.get("/{item_id}/next-minimum-bid", response_model=NextMinimumBidResponse)
async def next_minimum_bid(
    item_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> NextMinimumBidResponse:
    minimum = await services.ledger.get_next_minimum_bid(db, ctx, item_id)
    return NextMinimumBidResponse(item_id=item_id, next_minimum_bid=minimum)


# ---------------------------------------------------------------------------
# Bids
# ---------------------------------------------------------------------------


@bid_router.post(
    "",
    response_model=BidResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place a bid",
    description="Record a bid, buy-now purchase, raffle entry or donation",
)
async def place_bid(
    request: PlaceBidRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> BidResponse:
    bid = await services.ledger.place_bid(
        db, ctx, request.item_id, request.bidder_id, request.amount, request.kind
    )
    return BidResponse.model_validate(bid)


@bid_router.delete("/{bid_id}", status_code=status.HTTP_204_NO_CONTENT)
async def withdraw_bid(
    bid_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> Response:
    await services.ledger.withdraw_bid(db, ctx, bid_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@bidder_router.get("/{bidder_id}/unpaid-bids", response_model=UnpaidBidsResponse)
async def unpaid_bids(
    bidder_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> UnpaidBidsResponse:
    owed = await reporting.amount_owed(db, ctx, bidder_id)
    bids = await reporting.unpaid_winning_bids(db, ctx, bidder_id)
    return UnpaidBidsResponse(
        bidder_id=bidder_id,
        bids=[OwedBidResponse.model_validate(bid) for bid in bids],
        amount_owed=owed,
    )


@bidder_router.get("/{bidder_id}/checkout-preview", response_model=CheckoutPreviewResponse)
async def checkout_preview(
    bidder_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> CheckoutPreviewResponse:
    preview = await services.checkout.preview(db, ctx, bidder_id)
    return CheckoutPreviewResponse.model_validate(preview)


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


@checkout_router.post(
    "",
    response_model=CheckoutSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a checkout session",
)
async def create_checkout_session(
    request: CreateCheckoutRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> CheckoutSessionResponse:
    session = await services.checkout.create_session(
        db,
        ctx,
        request.bidder_id,
        request.bid_ids,
        request.payment_method,
        tax_amount=request.tax_amount,
    )
    return CheckoutSessionResponse.model_validate(session)


@checkout_router.get("/{session_id}", response_model=CheckoutSessionResponse)
async def get_checkout_session(
    session_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> CheckoutSessionResponse:
    session = await services.checkout.get_session(db, ctx, session_id)
    return CheckoutSessionResponse.model_validate(session)


@checkout_router.post("/{session_id}/complete", response_model=ReceiptResponse)
async def complete_cash_or_check(
    session_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> ReceiptResponse:
    receipt = await services.checkout.complete_cash_or_check(db, ctx, session_id)
    return ReceiptResponse.model_validate(receipt)


@checkout_router.post("/{session_id}/charge", response_model=ReceiptResponse)
async def charge_card(
    session_id: UUID,
    request: ChargeCardRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> ReceiptResponse:
    receipt = await services.checkout.charge_card(db, ctx, session_id, request.source_token)
    return ReceiptResponse.model_validate(receipt)


@checkout_router.post("/{session_id}/refund", response_model=CheckoutSessionResponse)
async def refund_checkout_session(
    session_id: UUID,
    request: RefundRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> CheckoutSessionResponse:
    session = await services.checkout.refund(
        db, ctx, session_id, amount=request.amount, reason=request.reason
    )
    return CheckoutSessionResponse.model_validate(session)


@checkout_router.post("/{session_id}/resolve", response_model=CheckoutSessionResponse)
async def resolve_reconciliation(
    session_id: UUID,
    request: ResolveReconciliationRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> CheckoutSessionResponse:
    session = await services.checkout.resolve_reconciliation(
        db, ctx, session_id, request.outcome, external_payment_id=request.external_payment_id
    )
    return CheckoutSessionResponse.model_validate(session)


@checkout_router.get("/{session_id}/events", response_model=List[CheckoutEventResponse])
async def checkout_session_events(
    session_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
) -> List[CheckoutEventResponse]:
    await services.checkout.get_session(db, ctx, session_id)
    events = await services.checkout.session_events(db, ctx, session_id)
    return [CheckoutEventResponse.model_validate(event) for event in events]


# ---------------------------------------------------------------------------
# Admin and monitoring
# ---------------------------------------------------------------------------


@admin_router.post(
    "/reconciliation/run",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Check this tenant's sessions stuck in processing against the gateway",
)
async def run_reconciliation(
    ctx: RequestContext = Depends(get_request_context),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    logger.info("api_reconciliation_requested", tenant_id=ctx.tenant_id)
    return await services.reconciliation.reconcile_tenant(ctx.tenant_id)


@monitoring_router.get("/health", summary="Health check")
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.check_all()


@monitoring_router.get("/health/live", summary="Liveness probe")
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get("/health/ready", summary="Readiness probe")
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get("/metrics", summary="Prometheus metrics")
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
