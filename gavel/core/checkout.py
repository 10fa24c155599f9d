"""
Checkout session state machine.

    pending -> processing -> completed -> refunded
    pending -> processing -> failed
    pending -> completed               (cash and check)

A session's status change and the paid flags of its bids are always written
in one transaction. Card charges run in three phases so no lock is held
across the gateway call:

1. Lock the session, move it to processing, commit
2. Call the gateway (keyed by the session reference)
3. Lock the session again and apply the outcome, commit

If phase 3 cannot be committed after the gateway charged, or the gateway's
answer is lost, the session is left in processing and reported for
reconciliation. It is never retried automatically.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gavel.config import Settings, get_settings
from gavel.core.clock import ensure_utc, utcnow
from gavel.core.context import (
    EventFeeConfigSource,
    FeeConfigSource,
    RequestContext,
    gateway_fees,
)
from gavel.core.exceptions import (
    InvalidBidSelectionError,
    InvalidSessionStateError,
    NotFoundError,
    PaymentDeclinedError,
    PaymentGatewayUnavailableError,
    ReconciliationRequiredError,
    RefundDeclinedError,
    RefundNotAllowedError,
)
from gavel.core.fees import FeeBreakdown, compute_fees
from gavel.core.idempotency import (
    ChargeReplayCache,
    session_receipt_payload,
    token_fingerprint,
)
from gavel.core.money import ZERO, AmountLike, quantize, to_minor_units
from gavel.database import queries
from gavel.database.models import (
    CheckoutEvent,
    CheckoutItem,
    CheckoutSession,
    CheckoutStatus,
    PaymentMethod,
)
from gavel.integrations.gateway import PaymentGateway
from gavel.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

RESOLVE_CHARGED = "charged"
RESOLVE_NOT_CHARGED = "not_charged"


@dataclass
class Receipt:
    """What staff see after a session is paid."""

    session_id: uuid.UUID
    reference: str
    status: str
    payment_method: str
    total_amount: Decimal
    external_payment_id: Optional[str] = None
    receipt_url: Optional[str] = None
    completed_at: Optional[datetime] = None
    replayed: bool = False

    @classmethod
    def from_session(cls, session: CheckoutSession) -> "Receipt":
        return cls(
            session_id=session.id,
            reference=session.reference,
            status=session.status,
            payment_method=session.payment_method,
            total_amount=session.total_amount,
            external_payment_id=session.external_payment_id,
            receipt_url=session.receipt_url,
            completed_at=session.completed_at,
        )

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], replayed: bool = True) -> "Receipt":
        completed_at = payload.get("completed_at")
        return cls(
            session_id=uuid.UUID(payload["session_id"]),
            reference=payload["reference"],
            status=payload["status"],
            payment_method=payload["payment_method"],
            total_amount=Decimal(payload["total_amount"]),
            external_payment_id=payload.get("external_payment_id"),
            receipt_url=payload.get("receipt_url"),
            completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
            replayed=replayed,
        )


@dataclass(frozen=True)
class _SessionRef:
    """Identifiers still usable after a rollback expires the ORM row."""

    session_id: uuid.UUID
    reference: str
    total_amount: Decimal
    external_payment_id: Optional[str]

    @classmethod
    def of(cls, session: CheckoutSession) -> "_SessionRef":
        return cls(
            session.id, session.reference, session.total_amount, session.external_payment_id
        )


@dataclass
class PreviewLine:
    bid_id: uuid.UUID
    item_name: str
    amount: Decimal


@dataclass
class CheckoutPreview:
    """A bidder's open balance, priced but not persisted."""

    bidder_id: uuid.UUID
    lines: List[PreviewLine] = field(default_factory=list)
    fees: Optional[FeeBreakdown] = None


def _parse_payment_method(payment_method: PaymentMethod | str) -> PaymentMethod:
    try:
        return PaymentMethod(payment_method)
    except ValueError as e:
        raise InvalidSessionStateError(
            f"Unsupported payment method: {payment_method}"
        ) from e


def _parse_tax(tax_amount: AmountLike) -> Decimal:
    try:
        tax = quantize(tax_amount)
    except (TypeError, ValueError) as e:
        raise InvalidBidSelectionError(f"Invalid tax amount: {e}") from e
    if tax < 0:
        raise InvalidBidSelectionError("Tax amount must not be negative.")
    return tax


class CheckoutManager:
    """
    Creates checkout sessions and drives them through payment.

    Handles the complete session lifecycle with proper error handling,
    charge replay and an audit trail of every transition.
    """

    def __init__(
        self,
        gateway: Optional[PaymentGateway] = None,
        fee_source: Optional[FeeConfigSource] = None,
        replay_cache: Optional[ChargeReplayCache] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize checkout manager.

        Args:
            gateway: Optional payment gateway (Stripe if not provided)
            fee_source: Optional platform fee source (event row if not provided)
            replay_cache: Optional charge replay cache
            settings: Optional settings override
        """
        self.settings = settings or get_settings()
        if gateway is None:
            from gavel.integrations.stripe_gateway import StripeGateway

            gateway = StripeGateway(self.settings)
        self.gateway = gateway
        self.fee_source = fee_source or EventFeeConfigSource()
        self.replay_cache = replay_cache or ChargeReplayCache(settings=self.settings)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _record_event(
        db: AsyncSession,
        ctx: RequestContext,
        session: CheckoutSession,
        event_type: str,
        event_data: Dict[str, Any],
    ) -> None:
        """Add an audit row to the current transaction."""
        db.add(
            CheckoutEvent(
                tenant_id=ctx.tenant_id,
                session_id=session.id,
                event_type=event_type,
                event_data=event_data,
                correlation_id=ctx.correlation_id,
                actor_id=ctx.actor_id,
            )
        )

    @staticmethod
    async def _lock_session(
        db: AsyncSession, ctx: RequestContext, session_id: uuid.UUID
    ) -> CheckoutSession:
        session = await queries.get_checkout_session(
            db, tenant_id=ctx.tenant_id, session_id=session_id, for_update=True
        )
        if session is None:
            raise NotFoundError("CheckoutSession", session_id)
        return session

    @staticmethod
    def _require_status(session: CheckoutSession, *allowed: CheckoutStatus) -> None:
        if session.status not in {status.value for status in allowed}:
            expected = " or ".join(status.value for status in allowed)
            raise InvalidSessionStateError(
                f"Checkout session {session.reference} is {session.status}; "
                f"expected {expected}."
            )

    async def _mark_completed(
        self,
        db: AsyncSession,
        ctx: RequestContext,
        session: CheckoutSession,
        external_payment_id: Optional[str] = None,
        receipt_url: Optional[str] = None,
    ) -> None:
        """Status to completed and every bid to paid, in the caller's transaction."""
        bid_ids = session.bid_ids
        changed = await queries.set_bids_paid(
            db, tenant_id=ctx.tenant_id, bid_ids=bid_ids, paid=True
        )
        if changed != len(bid_ids):
            raise InvalidSessionStateError(
                f"Checkout session {session.reference} references bids that are already paid."
            )
        session.status = CheckoutStatus.COMPLETED.value
        session.completed_at = utcnow()
        session.processed_by = ctx.actor_id
        if external_payment_id is not None:
            session.external_payment_id = external_payment_id
        if receipt_url is not None:
            session.receipt_url = receipt_url
        session.error_message = None

    async def _mark_failed(
        self, db: AsyncSession, ctx: RequestContext, session: CheckoutSession, reason: str
    ) -> None:
        """Status to failed and the bids released for a new session."""
        session.status = CheckoutStatus.FAILED.value
        session.error_message = reason
        session.processed_by = ctx.actor_id
        await queries.deactivate_checkout_items(
            db, tenant_id=ctx.tenant_id, session_id=session.id
        )

    def _flag_reconciliation(
        self,
        ctx: RequestContext,
        ref: "_SessionRef",
        operation: str,
        error: Exception,
        external_payment_id: Optional[str] = None,
    ) -> ReconciliationRequiredError:
        metrics.record_reconciliation_required(operation)
        logger.error(
            "reconciliation_required",
            operation=operation,
            tenant_id=ctx.tenant_id,
            correlation_id=str(ctx.correlation_id),
            session_id=str(ref.session_id),
            reference=ref.reference,
            total_amount=str(ref.total_amount),
            external_payment_id=external_payment_id,
            error=str(error),
            error_type=type(error).__name__,
        )
        return ReconciliationRequiredError(
            f"Payment outcome for checkout session {ref.reference} is unknown; "
            "it has been flagged for reconciliation. Do not charge again.",
            session_id=ref.session_id,
            reference=ref.reference,
            external_payment_id=external_payment_id,
        )

    @staticmethod
    def _observe_completion(session: CheckoutSession) -> None:
        metrics.record_checkout_transition(session.payment_method, session.status)
        if session.completed_at and session.created_at:
            duration = (
                ensure_utc(session.completed_at) - ensure_utc(session.created_at)
            ).total_seconds()
            metrics.record_checkout_completed(
                session.payment_method, float(session.total_amount), max(duration, 0.0)
            )

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    async def get_session(
        self, db: AsyncSession, ctx: RequestContext, session_id: uuid.UUID
    ) -> CheckoutSession:
        session = await queries.get_checkout_session(
            db, tenant_id=ctx.tenant_id, session_id=session_id
        )
        if session is None:
            raise NotFoundError("CheckoutSession", session_id)
        return session

    async def session_events(
        self, db: AsyncSession, ctx: RequestContext, session_id: uuid.UUID
    ) -> List[CheckoutEvent]:
        """Audit trail of a session, oldest first."""
        stmt = (
            select(CheckoutEvent)
            .where(
                CheckoutEvent.tenant_id == queries.require_tenant(ctx.tenant_id),
                CheckoutEvent.session_id == session_id,
            )
            .order_by(CheckoutEvent.id.asc())
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def preview(
        self,
        db: AsyncSession,
        ctx: RequestContext,
        bidder_id: uuid.UUID,
        tax_amount: AmountLike = ZERO,
    ) -> CheckoutPreview:
        """
        Price a bidder's unpaid winning bids without creating a session.

        Bids already held by an active session are left out.
        """
        tax = _parse_tax(tax_amount)
        bidder = await queries.get_bidder(db, tenant_id=ctx.tenant_id, bidder_id=bidder_id)
        if bidder is None:
            raise NotFoundError("Bidder", bidder_id)

        rows = await queries.unpaid_winning_bids(
            db, tenant_id=ctx.tenant_id, bidder_id=bidder_id
        )
        held = await queries.active_session_bid_ids(
            db, tenant_id=ctx.tenant_id, bid_ids=[bid.id for bid, _ in rows]
        )
        preview = CheckoutPreview(
            bidder_id=bidder_id,
            lines=[
                PreviewLine(bid_id=bid.id, item_name=name, amount=bid.amount)
                for bid, name in rows
                if bid.id not in held
            ],
        )
        if preview.lines:
            config = await self.fee_source.current_fee_config(db, ctx, bidder.event_id)
            subtotal = sum((line.amount for line in preview.lines), ZERO)
            preview.fees = compute_fees(subtotal, tax, config, gateway_fees(self.settings))
        return preview

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    async def create_session(
        self,
        db: AsyncSession,
        ctx: RequestContext,
        bidder_id: uuid.UUID,
        bid_ids: Sequence[uuid.UUID],
        payment_method: PaymentMethod | str,
        tax_amount: AmountLike = ZERO,
    ) -> CheckoutSession:
        """
        Create a pending checkout session for a bidder's winning bids.

        Flow:
        1. Validate the request
        2. Lock the selected bids
        3. Check each is the bidder's winning, unpaid bid
        4. Check none is held by another active session
        5. Compute fees and snapshot item names and amounts
        6. Commit

        Raises:
            InvalidBidSelectionError: Selection is empty, duplicated, not
                winning/unpaid/owned, or overlaps an active session
        """
        method = _parse_payment_method(payment_method)
        tax = _parse_tax(tax_amount)
        selected = list(bid_ids)
        if not selected:
            raise InvalidBidSelectionError("Select at least one bid to check out.")
        if len(set(selected)) != len(selected):
            raise InvalidBidSelectionError("The same bid was selected more than once.")

        try:
            bidder = await queries.get_bidder(db, tenant_id=ctx.tenant_id, bidder_id=bidder_id)
            if bidder is None:
                raise NotFoundError("Bidder", bidder_id)

            locked = await queries.lock_checkout_bids(
                db, tenant_id=ctx.tenant_id, bidder_id=bidder_id, bid_ids=selected
            )
            found = {bid.id for bid, _ in locked}
            missing = [str(bid_id) for bid_id in selected if bid_id not in found]
            if missing:
                raise InvalidBidSelectionError(
                    "These bids are not winning, unpaid bids of this bidder: "
                    + ", ".join(missing)
                )
            if any(bid.event_id != bidder.event_id for bid, _ in locked):
                raise InvalidBidSelectionError("All bids must belong to the bidder's event.")

            held = await queries.active_session_bid_ids(
                db, tenant_id=ctx.tenant_id, bid_ids=selected
            )
            if held:
                raise InvalidBidSelectionError(
                    "These bids are already in an active checkout session: "
                    + ", ".join(str(bid_id) for bid_id in sorted(held, key=str))
                )

            config = await self.fee_source.current_fee_config(db, ctx, bidder.event_id)
            subtotal = sum((bid.amount for bid, _ in locked), ZERO)
            fees = compute_fees(subtotal, tax, config, gateway_fees(self.settings))

            session = CheckoutSession(
                id=uuid.uuid4(),
                tenant_id=ctx.tenant_id,
                event_id=bidder.event_id,
                bidder_id=bidder_id,
                reference=f"cs_{uuid.uuid4().hex}",
                subtotal=fees.subtotal,
                tax_amount=fees.tax_amount,
                platform_fee=fees.platform_fee,
                processing_fee=fees.processing_fee,
                total_amount=fees.total,
                payment_method=method.value,
                status=CheckoutStatus.PENDING.value,
            )
            session.items = [
                CheckoutItem(
                    tenant_id=ctx.tenant_id,
                    bid_id=bid.id,
                    item_name=item_name,
                    amount=bid.amount,
                    active=True,
                )
                for bid, item_name in locked
            ]
            db.add(session)
            self._record_event(
                db,
                ctx,
                session,
                "checkout.session_created",
                {
                    "bid_ids": [str(bid.id) for bid, _ in locked],
                    "payment_method": method.value,
                    "subtotal": str(fees.subtotal),
                    "tax_amount": str(fees.tax_amount),
                    "platform_fee": str(fees.platform_fee),
                    "processing_fee": str(fees.processing_fee),
                    "total_amount": str(fees.total),
                },
            )
            await db.commit()

        except IntegrityError as e:
            # Partial unique index on active checkout_items.bid_id
            await db.rollback()
            logger.warning(
                "checkout_session_conflict",
                tenant_id=ctx.tenant_id,
                bidder_id=str(bidder_id),
                error=str(e.orig),
            )
            raise InvalidBidSelectionError(
                "One or more bids were checked out concurrently by another session."
            ) from e
        except Exception:
            await db.rollback()
            raise

        metrics.record_checkout_transition(method.value, CheckoutStatus.PENDING.value)
        logger.info(
            "checkout_session_created",
            tenant_id=ctx.tenant_id,
            correlation_id=str(ctx.correlation_id),
            session_id=str(session.id),
            reference=session.reference,
            bidder_id=str(bidder_id),
            bid_count=len(locked),
            payment_method=method.value,
            total_amount=str(session.total_amount),
        )
        return session

    async def complete_cash_or_check(
        self, db: AsyncSession, ctx: RequestContext, session_id: uuid.UUID
    ) -> Receipt:
        """
        Record an in-person cash or check payment.

        Raises:
            InvalidSessionStateError: Card session, or not pending
        """
        try:
            session = await self._lock_session(db, ctx, session_id)
            if session.payment_method == PaymentMethod.CARD.value:
                raise InvalidSessionStateError(
                    "Card sessions must be paid through the payment gateway."
                )
            self._require_status(session, CheckoutStatus.PENDING)

            await self._mark_completed(db, ctx, session)
            self._record_event(
                db,
                ctx,
                session,
                "checkout.completed",
                {"payment_method": session.payment_method, "total_amount": str(session.total_amount)},
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        self._observe_completion(session)
        logger.info(
            "checkout_session_completed",
            tenant_id=ctx.tenant_id,
            correlation_id=str(ctx.correlation_id),
            session_id=str(session.id),
            payment_method=session.payment_method,
            total_amount=str(session.total_amount),
        )
        return Receipt.from_session(session)

    async def charge_card(
        self,
        db: AsyncSession,
        ctx: RequestContext,
        session_id: uuid.UUID,
        source_token: str,
    ) -> Receipt:
        """
        Charge a card for a pending card session.

        A repeat call with the same token after success returns the
        original receipt.

        Raises:
            PaymentDeclinedError: Gateway refused; session is now failed
            PaymentGatewayUnavailableError: Gateway unreachable; session is
                pending again and the charge may be retried
            ReconciliationRequiredError: Gateway outcome unknown, or the
                success could not be recorded; session stays processing
        """
        if not source_token:
            raise InvalidSessionStateError("A card payment token is required.")

        # Phase 1: claim the session
        try:
            session = await self._lock_session(db, ctx, session_id)
            if session.payment_method != PaymentMethod.CARD.value:
                raise InvalidSessionStateError(
                    "Cash and check sessions are completed without a card charge."
                )
            if session.status == CheckoutStatus.COMPLETED.value:
                replay = await self.replay_cache.find(ctx.tenant_id, session, source_token)
                if replay is not None:
                    await db.rollback()
                    return Receipt.from_payload(replay)
            self._require_status(session, CheckoutStatus.PENDING)

            session.status = CheckoutStatus.PROCESSING.value
            session.processed_by = ctx.actor_id
            session.payment_details = {
                **(session.payment_details or {}),
                "token_fingerprint": token_fingerprint(source_token),
            }
            self._record_event(
                db,
                ctx,
                session,
                "checkout.charge_started",
                {"amount_minor": to_minor_units(session.total_amount)},
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        ref = _SessionRef.of(session)
        metrics.record_checkout_transition(session.payment_method, session.status)
        logger.info(
            "checkout_charge_started",
            tenant_id=ctx.tenant_id,
            correlation_id=str(ctx.correlation_id),
            session_id=str(session.id),
            reference=session.reference,
            total_amount=str(session.total_amount),
        )

        # Phase 2: gateway call, no locks held
        try:
            result = await self.gateway.charge(
                amount_minor=to_minor_units(session.total_amount),
                currency=self.settings.currency,
                source_token=source_token,
                reference_id=session.reference,
                metadata={
                    "tenant_id": ctx.tenant_id,
                    "session_id": str(session.id),
                    "bidder_id": str(session.bidder_id),
                },
            )
        except PaymentGatewayUnavailableError as e:
            await self._revert_to_pending(db, ctx, session.id, e.message)
            raise
        except Exception as e:
            raise self._flag_reconciliation(ctx, ref, "charge", e) from e

        # Phase 3: apply the outcome
        if not result.success:
            reason = result.decline_reason or "Payment was declined."
            await self._apply_decline(db, ctx, ref.session_id, reason, result.details)
            raise PaymentDeclinedError(reason, session_id=str(ref.session_id))

        try:
            session = await self._lock_session(db, ctx, ref.session_id)
            self._require_status(session, CheckoutStatus.PROCESSING)
            await self._mark_completed(
                db,
                ctx,
                session,
                external_payment_id=result.external_payment_id,
                receipt_url=result.receipt_url,
            )
            session.payment_details = {
                **(session.payment_details or {}),
                "gateway": result.details,
            }
            self._record_event(
                db,
                ctx,
                session,
                "checkout.completed",
                {
                    "payment_method": session.payment_method,
                    "external_payment_id": result.external_payment_id,
                    "total_amount": str(session.total_amount),
                },
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            raise self._flag_reconciliation(
                ctx, ref, "charge", e, external_payment_id=result.external_payment_id
            ) from e

        await self.replay_cache.store(
            ctx.tenant_id, session.id, source_token, session_receipt_payload(session)
        )
        self._observe_completion(session)
        logger.info(
            "checkout_session_completed",
            tenant_id=ctx.tenant_id,
            correlation_id=str(ctx.correlation_id),
            session_id=str(session.id),
            payment_method=session.payment_method,
            external_payment_id=session.external_payment_id,
            total_amount=str(session.total_amount),
        )
        return Receipt.from_session(session)

    async def _revert_to_pending(
        self, db: AsyncSession, ctx: RequestContext, session_id: uuid.UUID, reason: str
    ) -> None:
        try:
            session = await self._lock_session(db, ctx, session_id)
            if session.status == CheckoutStatus.PROCESSING.value:
                session.status = CheckoutStatus.PENDING.value
                session.error_message = reason
                self._record_event(
                    db, ctx, session, "checkout.gateway_unavailable", {"error": reason}
                )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        metrics.record_checkout_transition(session.payment_method, session.status)
        logger.warning(
            "checkout_charge_unavailable",
            tenant_id=ctx.tenant_id,
            session_id=str(session_id),
            error=reason,
        )

    async def _apply_decline(
        self,
        db: AsyncSession,
        ctx: RequestContext,
        session_id: uuid.UUID,
        reason: str,
        details: Dict[str, Any],
    ) -> None:
        try:
            session = await self._lock_session(db, ctx, session_id)
            self._require_status(session, CheckoutStatus.PROCESSING)
            await self._mark_failed(db, ctx, session, reason)
            session.payment_details = {**(session.payment_details or {}), "gateway": details}
            self._record_event(db, ctx, session, "checkout.declined", {"reason": reason})
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        metrics.record_checkout_transition(session.payment_method, session.status)
        logger.info(
            "checkout_payment_declined",
            tenant_id=ctx.tenant_id,
            correlation_id=str(ctx.correlation_id),
            session_id=str(session_id),
            reason=reason,
        )

    async def refund(
        self,
        db: AsyncSession,
        ctx: RequestContext,
        session_id: uuid.UUID,
        amount: Optional[AmountLike] = None,
        reason: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Refund a completed session, fully by default.

        Card refunds go to the gateway first; nothing changes locally unless
        it accepts. The session becomes refunded either way, and only a full
        refund returns its bids to unpaid.

        Raises:
            RefundNotAllowedError: Not completed, or amount out of range
            RefundDeclinedError: Gateway refused the refund
        """
        try:
            session = await self._lock_session(db, ctx, session_id)
            if session.status != CheckoutStatus.COMPLETED.value:
                raise RefundNotAllowedError(
                    f"Only completed sessions can be refunded; "
                    f"checkout session {session.reference} is {session.status}."
                )
            try:
                refund_amount = session.total_amount if amount is None else quantize(amount)
            except (TypeError, ValueError) as e:
                raise RefundNotAllowedError(f"Invalid refund amount: {e}") from e
            if refund_amount <= 0 or refund_amount > session.total_amount:
                raise RefundNotAllowedError(
                    f"Refund amount must be greater than $0.00 and at most "
                    f"${session.total_amount:,.2f}."
                )
            full_refund = refund_amount == session.total_amount
            is_card = session.payment_method == PaymentMethod.CARD.value
            if is_card and not session.external_payment_id:
                raise RefundNotAllowedError(
                    f"Checkout session {session.reference} has no gateway payment to refund."
                )
            ref = _SessionRef.of(session)
            if is_card:
                # Release the row lock before the gateway call
                await db.commit()
        except Exception:
            await db.rollback()
            raise

        refund_details: Dict[str, Any] = {
            "amount": str(refund_amount),
            "full": full_refund,
            "reason": reason,
        }

        if is_card:
            try:
                result = await self.gateway.refund(
                    external_payment_id=ref.external_payment_id,
                    amount_minor=to_minor_units(refund_amount),
                    reason=reason,
                    idempotency_key=f"refund:{ref.reference}",
                )
            except PaymentGatewayUnavailableError:
                raise
            except Exception as e:
                raise self._flag_reconciliation(
                    ctx, ref, "refund", e, external_payment_id=ref.external_payment_id
                ) from e
            if not result.success:
                decline = result.decline_reason or "Refund was declined."
                logger.info(
                    "checkout_refund_declined",
                    tenant_id=ctx.tenant_id,
                    session_id=str(ref.session_id),
                    reason=decline,
                )
                raise RefundDeclinedError(decline, session_id=str(ref.session_id))
            refund_details["refund_id"] = result.refund_id
            refund_details["refund_status"] = result.status

        try:
            if is_card:
                session = await self._lock_session(db, ctx, session_id)
                if session.status != CheckoutStatus.COMPLETED.value:
                    raise InvalidSessionStateError(
                        f"Checkout session {session.reference} changed to "
                        f"{session.status} during the refund."
                    )
            session.status = CheckoutStatus.REFUNDED.value
            session.processed_by = ctx.actor_id
            refund_details["refunded_at"] = utcnow().isoformat()
            session.payment_details = {
                **(session.payment_details or {}),
                "refund": refund_details,
            }
            if full_refund:
                await queries.set_bids_paid(
                    db, tenant_id=ctx.tenant_id, bid_ids=session.bid_ids, paid=False
                )
            await queries.deactivate_checkout_items(
                db, tenant_id=ctx.tenant_id, session_id=session.id
            )
            self._record_event(db, ctx, session, "checkout.refunded", refund_details)
            await db.commit()
        except Exception as e:
            await db.rollback()
            if is_card:
                raise self._flag_reconciliation(
                    ctx, ref, "refund", e, external_payment_id=ref.external_payment_id
                ) from e
            raise

        metrics.record_checkout_transition(session.payment_method, session.status)
        logger.info(
            "checkout_session_refunded",
            tenant_id=ctx.tenant_id,
            correlation_id=str(ctx.correlation_id),
            session_id=str(session.id),
            amount=str(refund_amount),
            full_refund=full_refund,
        )
        return session

    async def resolve_reconciliation(
        self,
        db: AsyncSession,
        ctx: RequestContext,
        session_id: uuid.UUID,
        outcome: str,
        external_payment_id: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Settle a session stuck in processing once staff know what happened.

        outcome "charged" completes it and marks its bids paid;
        "not_charged" fails it and releases the bids.
        """
        if outcome not in (RESOLVE_CHARGED, RESOLVE_NOT_CHARGED):
            raise InvalidSessionStateError(
                f"Outcome must be '{RESOLVE_CHARGED}' or '{RESOLVE_NOT_CHARGED}'."
            )
        try:
            session = await self._lock_session(db, ctx, session_id)
            self._require_status(session, CheckoutStatus.PROCESSING)
            if outcome == RESOLVE_CHARGED:
                await self._mark_completed(
                    db, ctx, session, external_payment_id=external_payment_id
                )
            else:
                await self._mark_failed(
                    db, ctx, session, "Not charged (resolved by reconciliation)."
                )
            self._record_event(
                db,
                ctx,
                session,
                "checkout.reconciliation_resolved",
                {"outcome": outcome, "external_payment_id": external_payment_id},
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        if session.status == CheckoutStatus.COMPLETED.value:
            self._observe_completion(session)
        else:
            metrics.record_checkout_transition(session.payment_method, session.status)
        logger.info(
            "checkout_reconciliation_resolved",
            tenant_id=ctx.tenant_id,
            correlation_id=str(ctx.correlation_id),
            session_id=str(session.id),
            outcome=outcome,
        )
        return session
