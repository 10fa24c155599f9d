"""
Exception classes for the bidding and checkout engine.

Validation errors describe a caller mistake and carry a message precise
enough to act on at the point of sale. Payment errors distinguish a gateway
decline (terminal for the session), an unreachable gateway (safe to retry)
and an unknown outcome (needs reconciliation).
"""
from decimal import Decimal
from typing import Any, Dict, Optional


class AuctionError(Exception):
    """
    Base exception for all engine errors.

    Every exception includes:
    - Error code (for client handling)
    - User message (safe to show to staff)
    - HTTP status code (for API responses)
    """

    error_code = "auction_error"
    http_status = 400

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        http_status: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if http_status is not None:
            self.http_status = http_status
        self.metadata = kwargs

    @property
    def user_message(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.user_message,
                "type": self.__class__.__name__,
            }
        }


# ============================================================================
# CONTEXT AND LOOKUP ERRORS
# ============================================================================

class TenantContextMissingError(AuctionError):
    """A data-access call was made without a tenant."""

    error_code = "tenant_context_missing"

    def __init__(self, message: str = "Tenant context not set", **kwargs: Any):
        super().__init__(message, **kwargs)


class NotFoundError(AuctionError):
    """Entity doesn't exist for this tenant"""

    error_code = "not_found"
    http_status = 404

    def __init__(self, entity: str, entity_id: Any, **kwargs: Any):
        super().__init__(f"{entity} not found: {entity_id}", entity=entity, **kwargs)


class FeeConfigurationError(AuctionError):
    """Fee configuration outside the allowed bounds."""

    error_code = "invalid_fee_configuration"


# ============================================================================
# BIDDING ERRORS
# ============================================================================

class BiddingClosedError(AuctionError):
    """Item is inactive, outside its bidding window, or already settled."""

    error_code = "bidding_closed"
    http_status = 409


class BidTooLowError(AuctionError):
    """Standard bid below the next minimum bid."""

    error_code = "bid_too_low"

    def __init__(self, amount: Decimal, minimum: Decimal, **kwargs: Any):
        super().__init__(
            f"Minimum bid is ${minimum:,.2f}",
            amount=str(amount),
            minimum=str(minimum),
            **kwargs,
        )
        self.amount = amount
        self.minimum = minimum


class BuyNowUnavailableError(AuctionError):
    """Item has no buy-now price, or the amount does not match it."""

    error_code = "buy_now_unavailable"


class BidValidationError(AuctionError):
    """Malformed bid request (wrong event, negative amount, unknown kind)."""

    error_code = "invalid_bid"


class CannotModifyPaidBidError(AuctionError):
    """Bid is paid, or held by an active checkout session."""

    error_code = "cannot_modify_paid_bid"
    http_status = 409


# ============================================================================
# CHECKOUT ERRORS
# ============================================================================

class InvalidBidSelectionError(AuctionError):
    """Selected bids cannot be checked out together."""

    error_code = "invalid_bid_selection"


class InvalidSessionStateError(AuctionError):
    """Operation not valid for the session's payment method or status."""

    error_code = "invalid_session_state"
    http_status = 409


class RefundNotAllowedError(AuctionError):
    """Refund requested for a session that cannot be refunded."""

    error_code = "refund_not_allowed"


class PaymentDeclinedError(AuctionError):
    """
    Gateway refused the charge.

    The message is the gateway's own text, shown to staff unchanged.
    Terminal for the session: a new checkout session is required.
    """

    error_code = "payment_declined"
    http_status = 402

    def __init__(self, reason: str, **kwargs: Any):
        super().__init__(reason, **kwargs)
        self.reason = reason


class RefundDeclinedError(PaymentDeclinedError):
    """Gateway refused the refund."""

    error_code = "refund_declined"


class PaymentGatewayUnavailableError(AuctionError):
    """
    Gateway could not be reached or timed out.

    No charge is known to have happened, so the session stays pending and
    the charge may be retried.
    """

    error_code = "payment_gateway_unavailable"
    http_status = 503


class ReconciliationRequiredError(AuctionError):
    """
    Gateway outcome unknown after local state was advanced.

    Never resolved automatically; see ReconciliationEngine.
    """

    error_code = "reconciliation_required"
    http_status = 502

    def __init__(self, message: str, session_id: Any, **kwargs: Any):
        super().__init__(message, session_id=str(session_id), **kwargs)
        self.session_id = session_id
