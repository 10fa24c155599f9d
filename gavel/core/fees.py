"""
Platform and processing fee calculation.

platform_fee   = subtotal * percentage / 100 + fixed_fee
processing_fee = (subtotal + tax + platform_fee) * gateway_percentage / 100
                 + gateway_fixed_fee

The processing fee is charged on the post-platform-fee amount because the
gateway takes its cut of the grand total. Each fee component is rounded to
cents on its own (half-up) and the total is the exact sum of the rounded
components, so a stored session always satisfies
total == subtotal + tax + platform_fee + processing_fee.
"""
from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from gavel.core.exceptions import FeeConfigurationError
from gavel.core.money import AmountLike, quantize, to_decimal

HUNDRED = Decimal("100")
# Precision of the stored event percentage
PERCENTAGE_PLACES = Decimal("0.0001")


class FeeConfig(BaseModel):
    """Per-event platform fee configuration."""

    model_config = ConfigDict(frozen=True)

    percentage: Decimal
    fixed_fee: Decimal

    @classmethod
    def validated(
        cls,
        percentage: AmountLike,
        fixed_fee: AmountLike,
        max_percentage: AmountLike,
        max_fixed_fee: AmountLike | None = None,
    ) -> FeeConfig:
        """
        Build a fee configuration, enforcing the administrative caps.

        Raises:
            FeeConfigurationError: If a value is negative, above its cap, or finer than
                the stored precision
        """
        try:
            pct = to_decimal(percentage)
            fixed = to_decimal(fixed_fee)
        except (TypeError, ValueError) as e:
            raise FeeConfigurationError(str(e)) from e

        if pct < 0:
            raise FeeConfigurationError("Platform fee percentage must not be negative")
        if fixed < 0:
            raise FeeConfigurationError("Fixed platform fee must not be negative")
        if pct > to_decimal(max_percentage):
            raise FeeConfigurationError(
                f"Platform fee percentage {pct}% exceeds the {max_percentage}% cap"
            )
        if max_fixed_fee is not None and fixed > to_decimal(max_fixed_fee):
            raise FeeConfigurationError(
                f"Fixed platform fee ${fixed:,.2f} exceeds the ${to_decimal(max_fixed_fee):,.2f} cap"
            )
        if pct != pct.quantize(PERCENTAGE_PLACES):
            raise FeeConfigurationError(
                f"Platform fee percentage {pct}% has more than 4 decimal places"
            )
        if fixed != quantize(fixed):
            raise FeeConfigurationError(f"Fixed platform fee {fixed} is not a whole number of cents")
        return cls(percentage=pct, fixed_fee=fixed)


class GatewayFees(BaseModel):
    """Payment gateway's published rate."""

    model_config = ConfigDict(frozen=True)

    percentage: Decimal
    fixed_fee: Decimal


class FeeBreakdown(BaseModel):
    """Totals for one checkout."""

    model_config = ConfigDict(frozen=True)

    subtotal: Decimal
    tax_amount: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    total: Decimal


def platform_fee(subtotal: AmountLike, config: FeeConfig) -> Decimal:
    return quantize(to_decimal(subtotal) * config.percentage / HUNDRED + config.fixed_fee)


def processing_fee(amount: AmountLike, gateway: GatewayFees) -> Decimal:
    return quantize(to_decimal(amount) * gateway.percentage / HUNDRED + gateway.fixed_fee)


def compute_fees(
    subtotal: AmountLike,
    tax_amount: AmountLike,
    config: FeeConfig,
    gateway: GatewayFees,
) -> FeeBreakdown:
    """
    Compute the fee breakdown for a checkout.

    Args:
        subtotal: Sum of the bid amounts
        tax_amount: Tax entered by staff
        config: Event platform fee configuration
        gateway: Gateway processing rate

    Returns:
        FeeBreakdown: Rounded components and their exact sum
    """
    sub = quantize(subtotal)
    tax = quantize(tax_amount)
    if sub < 0 or tax < 0:
        raise ValueError("Subtotal and tax must not be negative")

    platform = platform_fee(sub, config)
    processing = processing_fee(sub + tax + platform, gateway)

    return FeeBreakdown(
        subtotal=sub,
        tax_amount=tax,
        platform_fee=platform,
        processing_fee=processing,
        total=sub + tax + platform + processing,
    )
