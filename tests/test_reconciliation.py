"""
Tests for reconciliation of checkout sessions stuck in processing.
"""
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, Tuple

import pytest
from sqlalchemy import select

from gavel.core.bid_ledger import BidLedger
from gavel.core.checkout import CheckoutManager
from gavel.core.clock import utcnow
from gavel.core.exceptions import PaymentGatewayUnavailableError, ReconciliationRequiredError
from gavel.core.money import to_minor_units
from gavel.core.reconciliation import ReconciliationEngine
from gavel.database import queries
from gavel.database.models import CheckoutStatus, PaymentMethod, ReconciliationRun
from gavel.integrations.gateway import ChargeLookup
from gavel.workers.reconciliation_worker import run_reconciliation_sweep


@pytest.fixture
def engine_under_test(
    gateway: Any, session_factory: Any, test_settings: Any
) -> ReconciliationEngine:
    return ReconciliationEngine(
        gateway=gateway, session_factory=session_factory, settings=test_settings
    )


@pytest.fixture
def stuck_session(
    db: Any,
    ctx: Any,
    checkout: CheckoutManager,
    gateway: Any,
    make_event: Any,
    make_item: Any,
    make_bidder: Any,
) -> Any:
    """A card session whose charge outcome was lost."""

    async def _stuck(context: Any = None) -> Tuple[uuid.UUID, str, Decimal]:
        context = context or ctx
        event = await make_event(context=context)
        item = await make_item(event.id, context=context)
        bidder = await make_bidder(event.id, context=context)
        bid = await BidLedger().place_bid(db, context, item.id, bidder.id, Decimal("110"))
        session = await checkout.create_session(
            db, context, bidder.id, [bid.id], PaymentMethod.CARD
        )
        session_id, reference, total = session.id, session.reference, session.total_amount

        gateway.charge_error = RuntimeError("read timeout")
        with pytest.raises(ReconciliationRequiredError):
            await checkout.charge_card(db, context, session_id, "pm_card_visa")
        gateway.charge_error = None
        return session_id, reference, total

    return _stuck


def later() -> Any:
    return utcnow() + timedelta(hours=1)


class TestReconciliationEngine:
    """Test suite for ReconciliationEngine."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_charged_but_not_confirmed(
        self, db: Any, ctx: Any, gateway: Any, engine_under_test: ReconciliationEngine, stuck_session: Any
    ) -> None:
        session_id, reference, total = await stuck_session()
        gateway.lookup_result = ChargeLookup(
            found=True,
            charged=True,
            external_payment_id="pi_late_789",
            amount_minor=to_minor_units(total),
            status="succeeded",
        )

        result = await engine_under_test.reconcile_tenant(ctx.tenant_id, now=later())

        assert result["sessions_checked"] == 1
        assert result["discrepancy_count"] == 1
        discrepancy = result["discrepancies"][0]
        assert discrepancy["type"] == "charged_not_confirmed"
        assert discrepancy["session_id"] == str(session_id)
        assert discrepancy["external_payment_id"] == "pi_late_789"
        assert gateway.lookups == [reference]

        # Findings only: the session is left for staff to resolve
        session = await queries.get_checkout_session(db, tenant_id=ctx.tenant_id, session_id=session_id)
        await db.refresh(session)
        assert session.status == CheckoutStatus.PROCESSING.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_not_charged(
        self, ctx: Any, gateway: Any, engine_under_test: ReconciliationEngine, stuck_session: Any
    ) -> None:
        await stuck_session()
        gateway.lookup_result = ChargeLookup(found=False)

        result = await engine_under_test.reconcile_tenant(ctx.tenant_id, now=later())

        assert [d["type"] for d in result["discrepancies"]] == ["not_charged"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_amount_mismatch(
        self, ctx: Any, gateway: Any, engine_under_test: ReconciliationEngine, stuck_session: Any
    ) -> None:
        _, _, total = await stuck_session()
        gateway.lookup_result = ChargeLookup(
            found=True,
            charged=True,
            external_payment_id="pi_other",
            amount_minor=to_minor_units(total) + 100,
            status="succeeded",
        )

        result = await engine_under_test.reconcile_tenant(ctx.tenant_id, now=later())

        discrepancy = result["discrepancies"][0]
        assert discrepancy["type"] == "amount_mismatch"
        assert discrepancy["gateway_amount_minor"] == discrepancy["expected_amount_minor"] + 100

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_lookup_failure_is_reported(
        self, ctx: Any, gateway: Any, engine_under_test: ReconciliationEngine, stuck_session: Any
    ) -> None:
        await stuck_session()
        gateway.lookup_error = PaymentGatewayUnavailableError("Payment gateway is unavailable.")

        result = await engine_under_test.reconcile_tenant(ctx.tenant_id, now=later())

        discrepancy = result["discrepancies"][0]
        assert discrepancy["type"] == "lookup_failed"
        assert "unavailable" in discrepancy["error"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_recent_sessions_are_not_checked(
        self, ctx: Any, gateway: Any, engine_under_test: ReconciliationEngine, stuck_session: Any
    ) -> None:
        await stuck_session()

        result = await engine_under_test.reconcile_tenant(ctx.tenant_id, now=utcnow())

        assert result["sessions_checked"] == 0
        assert result["discrepancies"] == []
        assert gateway.lookups == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_run_is_recorded(
        self, db: Any, ctx: Any, engine_under_test: ReconciliationEngine, stuck_session: Any
    ) -> None:
        await stuck_session()

        result = await engine_under_test.reconcile_tenant(ctx.tenant_id, now=later())

        run = (
            await db.execute(select(ReconciliationRun).where(ReconciliationRun.id == result["run_id"]))
        ).scalar_one()
        assert run.tenant_id == ctx.tenant_id
        assert run.status == "completed"
        assert run.sessions_checked == 1
        assert run.discrepancy_count == 1
        assert run.details["discrepancies"][0]["type"] == "not_charged"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_tenants_are_reconciled_separately(
        self,
        ctx: Any,
        other_ctx: Any,
        engine_under_test: ReconciliationEngine,
        stuck_session: Any,
    ) -> None:
        mine, _, _ = await stuck_session()
        theirs, _, _ = await stuck_session(other_ctx)

        result = await engine_under_test.reconcile_tenant(ctx.tenant_id, now=later())
        assert [d["session_id"] for d in result["discrepancies"]] == [str(mine)]

        sweep = await engine_under_test.reconcile_all(now=later())
        by_tenant = {r["tenant_id"]: r for r in sweep}
        assert set(by_tenant) == {ctx.tenant_id, other_ctx.tenant_id}
        assert [d["session_id"] for d in by_tenant[other_ctx.tenant_id]["discrepancies"]] == [
            str(theirs)
        ]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_worker_sweep_counts_discrepancies(
        self, engine_under_test: ReconciliationEngine, stuck_session: Any, monkeypatch: Any
    ) -> None:
        await stuck_session()
        original = engine_under_test.reconcile_all

        async def reconcile_later(now: Any = None) -> Any:
            return await original(now=later())

        monkeypatch.setattr(engine_under_test, "reconcile_all", reconcile_later)

        assert await run_reconciliation_sweep(engine_under_test) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tenant_required(self, engine_under_test: ReconciliationEngine) -> None:
        from gavel.core.exceptions import TenantContextMissingError

        with pytest.raises(TenantContextMissingError):
            await engine_under_test.reconcile_tenant("")
