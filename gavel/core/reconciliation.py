"""
Reconciliation engine for checkout sessions stuck in processing.

A session stays in processing when a card charge's outcome could not be
recorded. For each such session older than the stale threshold the engine
asks the gateway what happened and records one discrepancy:
- charged_not_confirmed: the gateway charged, the session is not completed
- not_charged: the gateway has no successful charge for the session
- amount_mismatch: the gateway charged a different amount
- lookup_failed: the gateway could not be asked

Findings are stored on a reconciliation run. Session state is never
changed here; staff settle each case with
CheckoutManager.resolve_reconciliation.
"""
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gavel.config import Settings, get_settings
from gavel.core.clock import utcnow
from gavel.core.money import to_minor_units
from gavel.database import queries
from gavel.database.connection import get_session_factory
from gavel.database.models import CheckoutSession, ReconciliationRun
from gavel.integrations.gateway import PaymentGateway
from gavel.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_STORED_DISCREPANCIES = 100


class ReconciliationError(Exception):
    """Raised when reconciliation fails."""

    pass


class ReconciliationEngine:
    """
    Compares sessions stuck in processing with the gateway's records.

    Works one tenant at a time; reconcile_all sweeps every tenant that has
    processing sessions.
    """

    def __init__(
        self,
        gateway: Optional[PaymentGateway] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            gateway: Optional payment gateway (Stripe if not provided)
            session_factory: Optional database session factory
            settings: Optional settings override
        """
        self.settings = settings or get_settings()
        if gateway is None:
            from gavel.integrations.stripe_gateway import StripeGateway

            gateway = StripeGateway(self.settings)
        self.gateway = gateway
        self.session_factory = session_factory or get_session_factory()
        logger.info("reconciliation_engine_initialized")

    async def _check_session(self, session: CheckoutSession) -> Dict[str, Any]:
        """Ask the gateway about one session and describe the discrepancy."""
        entry: Dict[str, Any] = {
            "session_id": str(session.id),
            "reference": session.reference,
            "expected_amount_minor": to_minor_units(session.total_amount),
        }
        try:
            lookup = await self.gateway.lookup_charge(session.reference)
        except Exception as e:
            logger.warning(
                "reconciliation_lookup_failed",
                session_id=str(session.id),
                reference=session.reference,
                error=str(e),
            )
            entry.update(type="lookup_failed", error=str(e))
            return entry

        entry.update(
            external_payment_id=lookup.external_payment_id,
            gateway_status=lookup.status,
            gateway_amount_minor=lookup.amount_minor,
        )
        if not lookup.charged:
            entry["type"] = "not_charged"
        elif lookup.amount_minor != entry["expected_amount_minor"]:
            entry["type"] = "amount_mismatch"
        else:
            entry["type"] = "charged_not_confirmed"
        return entry

    async def reconcile_tenant(
        self, tenant_id: str, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Reconcile one tenant's stale processing sessions.

        Args:
            tenant_id: Tenant to reconcile
            now: Clock override

        Returns:
            Dict[str, Any]: Reconciliation results
        """
        queries.require_tenant(tenant_id)
        now = now or utcnow()
        start = time.monotonic()
        older_than = now - timedelta(seconds=self.settings.reconciliation_stale_after_seconds)

        logger.info("reconciliation_started", tenant_id=tenant_id)

        async with self.session_factory() as db:
            run = ReconciliationRun(
                tenant_id=tenant_id,
                status="in_progress",
                started_at=now,
            )
            db.add(run)
            await db.commit()

            try:
                sessions = await queries.stale_processing_sessions(
                    db, tenant_id=tenant_id, older_than=older_than
                )
                discrepancies: List[Dict[str, Any]] = []
                for session in sessions:
                    discrepancies.append(await self._check_session(session))

                run.sessions_checked = len(sessions)
                run.discrepancy_count = len(discrepancies)
                run.status = "completed"
                run.completed_at = utcnow()
                run.details = {"discrepancies": discrepancies[:MAX_STORED_DISCREPANCIES]}
                await db.commit()

            except Exception as e:
                await db.rollback()
                logger.error("reconciliation_failed", tenant_id=tenant_id, error=str(e))

                run.status = "failed"
                run.completed_at = utcnow()
                run.details = {"error": str(e)}
                await db.commit()

                raise ReconciliationError(f"Reconciliation failed: {str(e)}") from e

        duration = time.monotonic() - start
        metrics.set_reconciliation_metrics(tenant_id, len(discrepancies), duration)
        if discrepancies:
            logger.warning(
                "reconciliation_discrepancies_detected",
                tenant_id=tenant_id,
                run_id=run.id,
                discrepancy_count=len(discrepancies),
                types=sorted({d["type"] for d in discrepancies}),
            )
        logger.info(
            "reconciliation_completed",
            tenant_id=tenant_id,
            run_id=run.id,
            sessions_checked=len(sessions),
            discrepancy_count=len(discrepancies),
        )

        return {
            "tenant_id": tenant_id,
            "run_id": run.id,
            "sessions_checked": len(sessions),
            "discrepancy_count": len(discrepancies),
            "discrepancies": discrepancies,
        }

    async def reconcile_all(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Reconcile every tenant with processing sessions.

        A failing tenant is logged and does not stop the sweep.
        """
        async with self.session_factory() as db:
            tenant_ids = await queries.tenants_with_processing_sessions(db)

        results = []
        for tenant_id in tenant_ids:
            try:
                results.append(await self.reconcile_tenant(tenant_id, now=now))
            except ReconciliationError as e:
                logger.error("tenant_reconciliation_failed", tenant_id=tenant_id, error=str(e))
        return results
