"""
Stripe payment gateway adapter.

Implements:
- Error classification (decline, unreachable, unknown outcome)
- Circuit breaker pattern
- Idempotent charges keyed by the checkout session reference
- Retries for read-only lookups; charges retry only when configured
"""
import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from gavel.config import Settings, get_settings
from gavel.core.exceptions import PaymentGatewayUnavailableError
from gavel.integrations.gateway import (
    ChargeLookup,
    ChargeResult,
    PaymentGateway,
    RefundResult,
)
from gavel.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class StripeErrorType(Enum):
    """Classification of Stripe errors."""

    DECLINE = "decline"  # Gateway answered no; nothing was charged
    TRANSIENT = "transient"  # Gateway unreachable; nothing was charged
    RATE_LIMIT = "rate_limit"  # Throttled; nothing was charged
    UNKNOWN = "unknown"  # Request may or may not have taken effect


class StripeGatewayError(Exception):
    """Stripe call whose outcome is unknown."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error


def classify_error(error: Exception) -> StripeErrorType:
    """
    Classify a Stripe error.

    Args:
        error: Exception raised by the Stripe SDK or by the call timeout

    Returns:
        StripeErrorType: Error classification
    """
    if isinstance(error, stripe.RateLimitError):
        return StripeErrorType.RATE_LIMIT
    elif isinstance(
        error,
        (stripe.APIConnectionError, stripe.AuthenticationError, asyncio.TimeoutError),
    ):
        return StripeErrorType.TRANSIENT
    elif isinstance(error, (stripe.CardError, stripe.InvalidRequestError)):
        return StripeErrorType.DECLINE
    else:
        # A 5xx or anything unexpected: the charge may have been made
        return StripeErrorType.UNKNOWN


def decline_message(error: Exception) -> str:
    """The gateway's own text for a refused request."""
    return getattr(error, "user_message", None) or str(error)


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Stops calling the gateway for a while once it keeps failing to answer.
    Declines count as answers.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute an async call with circuit breaker protection.

        Raises:
            PaymentGatewayUnavailableError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise PaymentGatewayUnavailableError(
                    "Payment gateway is temporarily unavailable. Please try again shortly."
                )

        try:
            result = await func()
        except Exception as e:
            if classify_error(e) == StripeErrorType.DECLINE:
                self.on_success()
            else:
                self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold or self.state == "half_open":
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class StripeGateway(PaymentGateway):
    """
    Stripe implementation of PaymentGateway.

    The SDK is synchronous, so each request runs in a worker thread and is
    bounded by gateway_timeout_seconds.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_wait: Optional[wait_base] = None,
    ) -> None:
        settings = settings or get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=8)

        logger.info(
            "stripe_gateway_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    async def _request(self, operation: str, func: Callable[[], T]) -> T:
        """
        Run one SDK call in a thread under the timeout and circuit breaker.

        Raises:
            PaymentGatewayUnavailableError: Unreachable, throttled or timed out
            stripe.CardError, stripe.InvalidRequestError: Refused by Stripe
            StripeGatewayError: Outcome unknown
        """
        start = time.monotonic()

        async def _call() -> T:
            return await asyncio.wait_for(
                asyncio.to_thread(func), timeout=self.settings.gateway_timeout_seconds
            )

        try:
            result = await self.circuit_breaker.call(_call)
        except PaymentGatewayUnavailableError:
            metrics.record_gateway_call(operation, "circuit_open", time.monotonic() - start)
            raise
        except Exception as e:
            duration = time.monotonic() - start
            error_type = classify_error(e)
            metrics.record_gateway_call(operation, error_type.value, duration)
            if error_type == StripeErrorType.DECLINE:
                raise

            metrics.record_gateway_error(error_type.value)
            logger.error(
                "stripe_api_error",
                operation=operation,
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            if error_type in (StripeErrorType.TRANSIENT, StripeErrorType.RATE_LIMIT):
                raise PaymentGatewayUnavailableError(
                    "Payment gateway is unavailable. Please try again.",
                    gateway_error=error_type.value,
                ) from e
            raise StripeGatewayError(str(e), error_type, original_error=e) from e

        metrics.record_gateway_call(operation, "success", time.monotonic() - start)
        return result

    def _retrying(self, attempts: int) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(PaymentGatewayUnavailableError),
            stop=stop_after_attempt(attempts),
            wait=self.retry_wait,
            reraise=True,
        )

    async def _with_retries(
        self, attempts: int, func: Callable[[], Awaitable[T]]
    ) -> T:
        async for attempt in self._retrying(attempts):
            with attempt:
                return await func()
        raise AssertionError("unreachable")

    async def charge(
        self,
        amount_minor: int,
        currency: str,
        source_token: str,
        reference_id: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ChargeResult:
        """
        Create and confirm a PaymentIntent for a card token.

        Args:
            amount_minor: Amount in cents
            currency: Currency code (e.g., 'USD')
            source_token: Stripe PaymentMethod id from the card reader or form
            reference_id: Checkout session reference, used as idempotency key
            metadata: Extra metadata stored on the PaymentIntent

        Returns:
            ChargeResult: success, or a decline with Stripe's message
        """
        logger.info(
            "creating_payment_intent",
            amount_minor=amount_minor,
            currency=currency,
            reference=reference_id,
        )

        def _create() -> Any:
            return stripe.PaymentIntent.create(
                amount=amount_minor,
                currency=currency.lower(),
                payment_method=source_token,
                confirm=True,
                idempotency_key=reference_id,
                metadata={**(metadata or {}), "reference": reference_id},
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                expand=["latest_charge"],
            )

        try:
            intent = await self._with_retries(
                self.settings.gateway_charge_max_attempts,
                lambda: self._request("charge", _create),
            )
        except (stripe.CardError, stripe.InvalidRequestError) as e:
            logger.info(
                "payment_declined",
                reference=reference_id,
                decline_code=getattr(e, "code", None),
            )
            return ChargeResult(
                success=False,
                decline_reason=decline_message(e),
                details={"decline_code": getattr(e, "code", None)},
            )

        status = intent.status
        if status == "succeeded":
            charge = getattr(intent, "latest_charge", None)
            receipt_url = getattr(charge, "receipt_url", None) if charge else None
            logger.info(
                "payment_intent_succeeded",
                payment_intent_id=intent.id,
                reference=reference_id,
            )
            return ChargeResult(
                success=True,
                external_payment_id=intent.id,
                receipt_url=receipt_url,
                details={"status": status, "amount_minor": amount_minor},
            )

        if status in ("requires_payment_method", "requires_action", "canceled"):
            error = getattr(intent, "last_payment_error", None)
            reason = getattr(error, "message", None) if error else None
            return ChargeResult(
                success=False,
                external_payment_id=intent.id,
                decline_reason=reason or f"Payment could not be completed ({status}).",
                details={"status": status},
            )

        # processing or any other in-flight state
        raise StripeGatewayError(
            f"PaymentIntent {intent.id} is {status}",
            StripeErrorType.UNKNOWN,
        )

    async def refund(
        self,
        external_payment_id: str,
        amount_minor: int,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a PaymentIntent.

        Args:
            external_payment_id: Stripe PaymentIntent ID
            amount_minor: Amount to refund in cents
            reason: Free-text reason, stored as metadata
            idempotency_key: Idempotency key
        """
        logger.info(
            "creating_refund",
            payment_intent_id=external_payment_id,
            amount_minor=amount_minor,
        )

        def _create_refund() -> Any:
            kwargs: Dict[str, Any] = {
                "payment_intent": external_payment_id,
                "amount": amount_minor,
                "reason": "requested_by_customer",
            }
            if reason:
                kwargs["metadata"] = {"reason": reason}
            if idempotency_key:
                kwargs["idempotency_key"] = idempotency_key
            return stripe.Refund.create(**kwargs)

        try:
            refund = await self._request("refund", _create_refund)
        except (stripe.CardError, stripe.InvalidRequestError) as e:
            return RefundResult(success=False, decline_reason=decline_message(e))

        if refund.status in ("failed", "canceled"):
            return RefundResult(
                success=False,
                refund_id=refund.id,
                status=refund.status,
                decline_reason=getattr(refund, "failure_reason", None)
                or f"Refund {refund.status}.",
            )

        logger.info("refund_created", refund_id=refund.id, status=refund.status)
        return RefundResult(success=True, refund_id=refund.id, status=refund.status)

    async def lookup_charge(self, reference_id: str) -> ChargeLookup:
        """
        Search for the PaymentIntent created under a session reference.

        Retried on transient failures; lookups have no side effects.
        """

        def _search() -> Any:
            return stripe.PaymentIntent.search(
                query=f"metadata['reference']:'{reference_id}'",
                limit=1,
            )

        result = await self._with_retries(
            self.settings.gateway_lookup_max_attempts,
            lambda: self._request("lookup", _search),
        )
        intents = list(result.data)
        if not intents:
            return ChargeLookup(found=False)

        intent = intents[0]
        return ChargeLookup(
            found=True,
            charged=intent.status == "succeeded",
            external_payment_id=intent.id,
            amount_minor=intent.amount,
            status=intent.status,
        )

    async def health_check(self) -> bool:
        """Check Stripe API connectivity by retrieving the account balance."""
        try:
            await self._request("health", stripe.Balance.retrieve)
        except Exception as e:
            logger.warning("stripe_health_check_failed", error=str(e))
            return False
        return True
