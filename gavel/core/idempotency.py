"""
Charge replay for checkout sessions.

A card charge that is submitted again for the same session with the same
card token, after it already succeeded, gets the original receipt back
instead of an error. Lookup is two-tier:
1. Redis cache for fast lookups (primary)
2. The completed session row, matched by a fingerprint of the token
"""
import hashlib
import json
import uuid
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog

from gavel.config import Settings, get_settings
from gavel.database.models import CheckoutSession, CheckoutStatus
from gavel.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def token_fingerprint(source_token: str) -> str:
    """Stable fingerprint of a card token; the token itself is never stored."""
    return hashlib.sha256(source_token.encode()).hexdigest()[:32]


def session_receipt_payload(session: CheckoutSession) -> Dict[str, Any]:
    """Serializable receipt for a completed session."""
    return {
        "session_id": str(session.id),
        "reference": session.reference,
        "status": session.status,
        "payment_method": session.payment_method,
        "total_amount": str(session.total_amount),
        "external_payment_id": session.external_payment_id,
        "receipt_url": session.receipt_url,
        "completed_at": session.completed_at.isoformat() if session.completed_at else None,
    }


class ChargeReplayCache:
    """
    Remembers successful card charges per (session, token).

    Redis failures are logged and treated as misses; the database record is
    authoritative.
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the cache.

        Args:
            redis_client: Optional Redis client (creates one if not provided)
            settings: Optional settings override
        """
        self.settings = settings or get_settings()
        self.redis_client = redis_client

    async def _ensure_redis(self) -> aioredis.Redis:
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @staticmethod
    def cache_key(tenant_id: str, session_id: uuid.UUID, source_token: str) -> str:
        return f"charge_replay:{tenant_id}:{session_id}:{token_fingerprint(source_token)}"

    async def find(
        self, tenant_id: str, session: CheckoutSession, source_token: str
    ) -> Optional[Dict[str, Any]]:
        """
        Return the stored receipt if this token already paid this session.

        Args:
            tenant_id: Tenant owning the session
            session: The session being charged
            source_token: Card token of the current request

        Returns:
            Optional[Dict[str, Any]]: Receipt payload, or None
        """
        key = self.cache_key(tenant_id, session.id, source_token)
        try:
            redis = await self._ensure_redis()
            cached = await redis.get(key)
            if cached:
                metrics.record_charge_replay("redis")
                logger.info("charge_replay_hit", session_id=str(session.id), source="redis")
                return json.loads(cached)
        except Exception as e:
            logger.warning("redis_cache_error", error=str(e), session_id=str(session.id))

        details = session.payment_details or {}
        if (
            session.status == CheckoutStatus.COMPLETED.value
            and details.get("token_fingerprint") == token_fingerprint(source_token)
        ):
            metrics.record_charge_replay("database")
            logger.info("charge_replay_hit", session_id=str(session.id), source="database")
            payload = session_receipt_payload(session)
            await self.store(tenant_id, session.id, source_token, payload)
            return payload

        return None

    async def store(
        self,
        tenant_id: str,
        session_id: uuid.UUID,
        source_token: str,
        payload: Dict[str, Any],
    ) -> None:
        """Cache a receipt for replay."""
        try:
            redis = await self._ensure_redis()
            await redis.setex(
                self.cache_key(tenant_id, session_id, source_token),
                self.settings.charge_replay_ttl,
                json.dumps(payload),
            )
        except Exception as e:
            logger.warning(
                "charge_replay_store_error", error=str(e), session_id=str(session_id)
            )

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
