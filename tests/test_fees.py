"""
Unit tests for money helpers and fee calculation.
"""
from decimal import Decimal

import pytest

from gavel.core.exceptions import FeeConfigurationError
from gavel.core.fees import FeeConfig, GatewayFees, compute_fees
from gavel.core.money import format_money, from_minor_units, quantize, to_minor_units

STANDARD_CONFIG = FeeConfig(percentage=Decimal("2.5"), fixed_fee=Decimal("0.30"))
STANDARD_GATEWAY = GatewayFees(percentage=Decimal("2.6"), fixed_fee=Decimal("0.10"))


class TestMoney:
    """Test suite for Decimal money helpers."""

    @pytest.mark.unit
    def test_quantize_rounds_half_up(self) -> None:
        assert quantize("26.755") == Decimal("26.76")
        assert quantize("26.745") == Decimal("26.75")
        assert quantize(10) == Decimal("10.00")

    @pytest.mark.unit
    def test_floats_are_rejected(self) -> None:
        with pytest.raises(TypeError, match="must not be float"):
            quantize(10.5)

    @pytest.mark.unit
    def test_non_numeric_is_rejected(self) -> None:
        with pytest.raises(ValueError, match="Invalid monetary amount"):
            quantize("ten dollars")

    @pytest.mark.unit
    def test_minor_units(self) -> None:
        assert to_minor_units(Decimal("1052.06")) == 105206
        assert from_minor_units(105206) == Decimal("1052.06")

    @pytest.mark.unit
    def test_format_money(self) -> None:
        assert format_money(Decimal("1052.06")) == "$1,052.06"
        assert format_money("110") == "$110.00"


class TestComputeFees:
    """Test suite for the checkout fee breakdown."""

    @pytest.mark.unit
    def test_standard_breakdown(self) -> None:
        """$1,000 at 2.5% + $0.30, gateway 2.6% + $0.10."""
        fees = compute_fees(Decimal("1000"), Decimal("0"), STANDARD_CONFIG, STANDARD_GATEWAY)

        assert fees.subtotal == Decimal("1000.00")
        assert fees.platform_fee == Decimal("25.30")
        assert fees.processing_fee == Decimal("26.76")
        assert fees.total == Decimal("1052.06")

    @pytest.mark.unit
    def test_total_is_exact_sum_of_components(self) -> None:
        fees = compute_fees(Decimal("333.33"), Decimal("27.51"), STANDARD_CONFIG, STANDARD_GATEWAY)

        assert fees.total == (
            fees.subtotal + fees.tax_amount + fees.platform_fee + fees.processing_fee
        )
        for value in (fees.platform_fee, fees.processing_fee, fees.total):
            assert value == value.quantize(Decimal("0.01"))

    @pytest.mark.unit
    def test_processing_fee_includes_tax_and_platform_fee(self) -> None:
        fees = compute_fees(Decimal("100"), Decimal("10"), STANDARD_CONFIG, STANDARD_GATEWAY)

        # platform 2.80; processing (100 + 10 + 2.80) * 2.6% + 0.10 = 3.0328
        assert fees.platform_fee == Decimal("2.80")
        assert fees.processing_fee == Decimal("3.03")
        assert fees.total == Decimal("115.83")

    @pytest.mark.unit
    def test_zero_fee_event(self) -> None:
        config = FeeConfig(percentage=Decimal("0"), fixed_fee=Decimal("0"))
        fees = compute_fees(Decimal("50"), Decimal("0"), config, STANDARD_GATEWAY)

        assert fees.platform_fee == Decimal("0.00")
        assert fees.processing_fee == Decimal("1.40")

    @pytest.mark.unit
    def test_negative_subtotal_rejected(self) -> None:
        with pytest.raises(ValueError, match="must not be negative"):
            compute_fees(Decimal("-1"), Decimal("0"), STANDARD_CONFIG, STANDARD_GATEWAY)


class TestFeeConfig:
    """Test suite for administrative fee caps."""

    @pytest.mark.unit
    def test_valid_config(self) -> None:
        config = FeeConfig.validated("2.5", "0.30", max_percentage="10", max_fixed_fee="5")
        assert config.percentage == Decimal("2.5")
        assert config.fixed_fee == Decimal("0.30")

    @pytest.mark.unit
    def test_percentage_above_cap(self) -> None:
        with pytest.raises(FeeConfigurationError, match="exceeds the 10% cap"):
            FeeConfig.validated("12", "0.30", max_percentage="10")

    @pytest.mark.unit
    def test_fixed_fee_above_cap(self) -> None:
        with pytest.raises(FeeConfigurationError, match="cap"):
            FeeConfig.validated("2.5", "7.00", max_percentage="10", max_fixed_fee="5.00")

    @pytest.mark.unit
    def test_negative_values_rejected(self) -> None:
        with pytest.raises(FeeConfigurationError, match="must not be negative"):
            FeeConfig.validated("-1", "0.30", max_percentage="10")
        with pytest.raises(FeeConfigurationError, match="must not be negative"):
            FeeConfig.validated("1", "-0.30", max_percentage="10")

    @pytest.mark.unit
    def test_float_rejected(self) -> None:
        with pytest.raises(FeeConfigurationError):
            FeeConfig.validated(2.5, "0.30", max_percentage="10")

    @pytest.mark.unit
    def test_fractional_percentage_kept_exactly(self) -> None:
        config = FeeConfig.validated("2.625", "0.30", max_percentage="10")
        assert config.percentage == Decimal("2.625")

    @pytest.mark.unit
    def test_percentage_finer_than_storage_rejected(self) -> None:
        with pytest.raises(FeeConfigurationError, match="more than 4 decimal places"):
            FeeConfig.validated("2.62501", "0.30", max_percentage="10")

    @pytest.mark.unit
    def test_fixed_fee_with_fractional_cents_rejected(self) -> None:
        with pytest.raises(FeeConfigurationError, match="whole number of cents"):
            FeeConfig.validated("2.5", "0.305", max_percentage="10")
