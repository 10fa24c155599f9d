"""
Unit tests for the Stripe gateway adapter.

The Stripe SDK is patched; no network calls are made.
"""
import asyncio
import time
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import stripe
from tenacity import wait_none

from gavel.core.exceptions import PaymentGatewayUnavailableError
from gavel.integrations.stripe_gateway import (
    CircuitBreaker,
    StripeErrorType,
    StripeGateway,
    StripeGatewayError,
    classify_error,
)

REFERENCE = "cs_0123456789abcdef"


@pytest.fixture
def stripe_gateway(test_settings: Any) -> StripeGateway:
    return StripeGateway(settings=test_settings, retry_wait=wait_none())


def intent(status: str, **attrs: Any) -> MagicMock:
    mock_intent = MagicMock()
    mock_intent.id = attrs.pop("id", "pi_test_123")
    mock_intent.status = status
    for name, value in attrs.items():
        setattr(mock_intent, name, value)
    return mock_intent


class TestClassifyError:
    """Test suite for Stripe error classification."""

    @pytest.mark.unit
    def test_card_error_is_decline(self) -> None:
        error = stripe.CardError("Your card was declined.", None, "card_declined")
        assert classify_error(error) == StripeErrorType.DECLINE

    @pytest.mark.unit
    def test_invalid_request_is_decline(self) -> None:
        error = stripe.InvalidRequestError("No such payment_method", "payment_method")
        assert classify_error(error) == StripeErrorType.DECLINE

    @pytest.mark.unit
    def test_connection_problems_are_transient(self) -> None:
        assert classify_error(stripe.APIConnectionError("Network down")) == StripeErrorType.TRANSIENT
        assert classify_error(asyncio.TimeoutError()) == StripeErrorType.TRANSIENT

    @pytest.mark.unit
    def test_rate_limit(self) -> None:
        assert classify_error(stripe.RateLimitError("Too many requests")) == StripeErrorType.RATE_LIMIT

    @pytest.mark.unit
    def test_server_error_is_unknown(self) -> None:
        assert classify_error(stripe.APIError("Internal error")) == StripeErrorType.UNKNOWN
        assert classify_error(ValueError("boom")) == StripeErrorType.UNKNOWN


class TestCharge:
    """Test suite for StripeGateway.charge."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_successful_charge(self, stripe_gateway: StripeGateway) -> None:
        succeeded = intent("succeeded")
        succeeded.latest_charge.receipt_url = "https://pay.stripe.com/receipts/abc"

        with patch("stripe.PaymentIntent.create", return_value=succeeded) as create:
            result = await stripe_gateway.charge(
                amount_minor=105206,
                currency="USD",
                source_token="pm_card_visa",
                reference_id=REFERENCE,
                metadata={"tenant_id": "tenant-a"},
            )

        assert result.success is True
        assert result.external_payment_id == "pi_test_123"
        assert result.receipt_url == "https://pay.stripe.com/receipts/abc"

        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 105206
        assert kwargs["currency"] == "usd"
        assert kwargs["payment_method"] == "pm_card_visa"
        assert kwargs["confirm"] is True
        assert kwargs["idempotency_key"] == REFERENCE
        assert kwargs["metadata"] == {"tenant_id": "tenant-a", "reference": REFERENCE}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_error_is_declined_result(self, stripe_gateway: StripeGateway) -> None:
        error = stripe.CardError("Your card was declined.", None, "card_declined")

        with patch("stripe.PaymentIntent.create", side_effect=error):
            result = await stripe_gateway.charge(10000, "USD", "pm_card_chargeDeclined", REFERENCE)

        assert result.success is False
        assert result.decline_reason == "Your card was declined."
        assert result.details["decline_code"] == "card_declined"
        assert stripe_gateway.circuit_breaker.state == "closed"
        assert stripe_gateway.circuit_breaker.failure_count == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_requires_action_is_declined_result(self, stripe_gateway: StripeGateway) -> None:
        pending = intent("requires_action", last_payment_error=None)

        with patch("stripe.PaymentIntent.create", return_value=pending):
            result = await stripe_gateway.charge(10000, "USD", "pm_card_threeDSecure2Required", REFERENCE)

        assert result.success is False
        assert "requires_action" in result.decline_reason

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connection_error_is_unavailable_and_not_retried(
        self, stripe_gateway: StripeGateway
    ) -> None:
        with patch(
            "stripe.PaymentIntent.create", side_effect=stripe.APIConnectionError("Network down")
        ) as create:
            with pytest.raises(PaymentGatewayUnavailableError):
                await stripe_gateway.charge(10000, "USD", "pm_card_visa", REFERENCE)

        assert create.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_charge_retries_when_configured(self, test_settings: Any) -> None:
        settings = test_settings.model_copy(update={"gateway_charge_max_attempts": 2})
        gateway = StripeGateway(settings=settings, retry_wait=wait_none())

        with patch(
            "stripe.PaymentIntent.create",
            side_effect=[stripe.APIConnectionError("Network down"), intent("succeeded")],
        ) as create:
            result = await gateway.charge(10000, "USD", "pm_card_visa", REFERENCE)

        assert result.success is True
        assert create.call_count == 2
        # Same idempotency key on both attempts
        assert {call.kwargs["idempotency_key"] for call in create.call_args_list} == {REFERENCE}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_server_error_is_unknown_outcome(self, stripe_gateway: StripeGateway) -> None:
        with patch("stripe.PaymentIntent.create", side_effect=stripe.APIError("Internal error")):
            with pytest.raises(StripeGatewayError) as exc_info:
                await stripe_gateway.charge(10000, "USD", "pm_card_visa", REFERENCE)

        assert exc_info.value.error_type == StripeErrorType.UNKNOWN

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_processing_status_is_unknown_outcome(self, stripe_gateway: StripeGateway) -> None:
        with patch("stripe.PaymentIntent.create", return_value=intent("processing")):
            with pytest.raises(StripeGatewayError, match="is processing"):
                await stripe_gateway.charge(10000, "USD", "pm_card_visa", REFERENCE)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self, test_settings: Any) -> None:
        settings = test_settings.model_copy(update={"gateway_timeout_seconds": 0.05})
        gateway = StripeGateway(settings=settings, retry_wait=wait_none())

        def slow_create(**kwargs: Any) -> Any:
            time.sleep(0.2)
            return intent("succeeded")

        with patch("stripe.PaymentIntent.create", side_effect=slow_create):
            with pytest.raises(PaymentGatewayUnavailableError):
                await gateway.charge(10000, "USD", "pm_card_visa", REFERENCE)


class TestCircuitBreaker:
    """Test suite for the circuit breaker."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_opens_after_repeated_failures(self, test_settings: Any) -> None:
        gateway = StripeGateway(
            settings=test_settings,
            circuit_breaker=CircuitBreaker(failure_threshold=2, timeout=60),
            retry_wait=wait_none(),
        )

        with patch(
            "stripe.PaymentIntent.create", side_effect=stripe.APIConnectionError("Network down")
        ) as create:
            for _ in range(3):
                with pytest.raises(PaymentGatewayUnavailableError):
                    await gateway.charge(10000, "USD", "pm_card_visa", REFERENCE)

        assert gateway.circuit_breaker.state == "open"
        assert create.call_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_half_open_closes_after_successes(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=0, success_threshold=2)

        async def fail() -> None:
            raise stripe.APIConnectionError("Network down")

        async def succeed() -> str:
            return "ok"

        with pytest.raises(stripe.APIConnectionError):
            await breaker.call(fail)
        assert breaker.state == "open"

        breaker.last_failure_time = time.time() - 1
        assert await breaker.call(succeed) == "ok"
        assert breaker.state == "half_open"
        assert await breaker.call(succeed) == "ok"
        assert breaker.state == "closed"


class TestRefundAndLookup:
    """Test suite for refunds, lookups and health."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund(self, stripe_gateway: StripeGateway) -> None:
        refund = MagicMock(id="re_test_1", status="succeeded")

        with patch("stripe.Refund.create", return_value=refund) as create:
            result = await stripe_gateway.refund(
                "pi_test_123", 10000, reason="Lot damaged", idempotency_key=f"refund:{REFERENCE}"
            )

        assert result.success is True
        assert result.refund_id == "re_test_1"
        kwargs = create.call_args.kwargs
        assert kwargs["payment_intent"] == "pi_test_123"
        assert kwargs["amount"] == 10000
        assert kwargs["metadata"] == {"reason": "Lot damaged"}
        assert kwargs["idempotency_key"] == f"refund:{REFERENCE}"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_refund(self, stripe_gateway: StripeGateway) -> None:
        refund = MagicMock(id="re_test_2", status="failed", failure_reason="expired_or_canceled_card")

        with patch("stripe.Refund.create", return_value=refund):
            result = await stripe_gateway.refund("pi_test_123", 10000)

        assert result.success is False
        assert result.decline_reason == "expired_or_canceled_card"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_rejected_by_stripe(self, stripe_gateway: StripeGateway) -> None:
        error = stripe.InvalidRequestError("Charge has already been refunded.", "charge")

        with patch("stripe.Refund.create", side_effect=error):
            result = await stripe_gateway.refund("pi_test_123", 10000)

        assert result.success is False
        assert "already been refunded" in result.decline_reason

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lookup_retries_and_finds_charge(self, stripe_gateway: StripeGateway) -> None:
        found = MagicMock(data=[intent("succeeded", amount=105206)])

        with patch(
            "stripe.PaymentIntent.search",
            side_effect=[stripe.APIConnectionError("Network down"), found],
        ) as search:
            lookup = await stripe_gateway.lookup_charge(REFERENCE)

        assert search.call_count == 2
        assert REFERENCE in search.call_args.kwargs["query"]
        assert lookup.found is True
        assert lookup.charged is True
        assert lookup.amount_minor == 105206
        assert lookup.external_payment_id == "pi_test_123"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lookup_not_found(self, stripe_gateway: StripeGateway) -> None:
        with patch("stripe.PaymentIntent.search", return_value=MagicMock(data=[])):
            lookup = await stripe_gateway.lookup_charge(REFERENCE)

        assert lookup.found is False
        assert lookup.charged is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_health_check(self, stripe_gateway: StripeGateway) -> None:
        with patch("stripe.Balance.retrieve", return_value=MagicMock()):
            assert await stripe_gateway.health_check() is True

        with patch("stripe.Balance.retrieve", side_effect=stripe.AuthenticationError("bad key")):
            assert await stripe_gateway.health_check() is False
