"""
Payment gateway interface.

The checkout state machine talks to card processors only through this
interface. Adapters report declines as results, raise
PaymentGatewayUnavailableError when the gateway could not be reached (the
charge definitely did not happen), and let any other exception propagate
when the outcome is unknown.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class ChargeResult:
    """Outcome of a charge the gateway answered."""

    success: bool
    external_payment_id: Optional[str] = None
    receipt_url: Optional[str] = None
    decline_reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    """Outcome of a refund the gateway answered."""

    success: bool
    refund_id: Optional[str] = None
    status: Optional[str] = None
    decline_reason: Optional[str] = None


@dataclass
class ChargeLookup:
    """What the gateway knows about a charge submitted under a reference."""

    found: bool
    charged: bool = False
    external_payment_id: Optional[str] = None
    amount_minor: Optional[int] = None
    status: Optional[str] = None


class PaymentGateway(ABC):
    """Card processor used by checkout and reconciliation."""

    @abstractmethod
    async def charge(
        self,
        amount_minor: int,
        currency: str,
        source_token: str,
        reference_id: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ChargeResult:
        """
        Charge a card token.

        reference_id doubles as the idempotency key: resubmitting the same
        reference never charges twice.
        """

    @abstractmethod
    async def refund(
        self,
        external_payment_id: str,
        amount_minor: int,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        """Refund all or part of a completed charge."""

    @abstractmethod
    async def lookup_charge(self, reference_id: str) -> ChargeLookup:
        """Find the charge submitted under reference_id, if any."""

    async def health_check(self) -> bool:
        return True
