"""
Unit tests for the fare split and gateway fee calculators.
"""
from decimal import Decimal

import pytest

from ridepay.core.commission import (
    calculate_commission_breakdown,
    calculate_gateway_fees,
    from_paise,
    to_paise,
)
from ridepay.core.errors import PaymentValidationError


class TestCommissionBreakdown:
    """Test suite for calculate_commission_breakdown."""

    @pytest.mark.unit
    def test_reference_split_at_15_percent(self) -> None:
        """A 500 fare at 15% commission and 18% GST."""
        breakdown = calculate_commission_breakdown(Decimal("500"), 15, 18)

        assert breakdown.total_fare == Decimal("500.00")
        assert breakdown.base_commission == Decimal("75.00")
        assert breakdown.gst_on_commission == Decimal("13.50")
        assert breakdown.platform_total == Decimal("88.50")
        assert breakdown.driver_net == Decimal("411.50")

    @pytest.mark.unit
    def test_default_percentages(self) -> None:
        breakdown = calculate_commission_breakdown("500.00")

        assert breakdown.commission_percent == Decimal("10")
        assert breakdown.gst_percent == Decimal("18")
        assert breakdown.base_commission == Decimal("50.00")
        assert breakdown.gst_on_commission == Decimal("9.00")
        assert breakdown.driver_net == Decimal("441.00")

    @pytest.mark.unit
    def test_amounts_in_paise(self) -> None:
        breakdown = calculate_commission_breakdown(Decimal("500"), 15, 18)

        assert breakdown.total_paise == 50000
        assert breakdown.base_commission_paise == 7500
        assert breakdown.gst_paise == 1350
        assert breakdown.platform_total_paise == 8850
        assert breakdown.driver_net_paise == 41150

    @pytest.mark.unit
    def test_rounds_half_up_from_exact_commission(self) -> None:
        """GST is computed on the unrounded commission, then each part is rounded."""
        breakdown = calculate_commission_breakdown(Decimal("333.33"), 10, 18)

        # exact commission 33.333, exact GST 5.99994
        assert breakdown.base_commission == Decimal("33.33")
        assert breakdown.gst_on_commission == Decimal("6.00")
        assert breakdown.platform_total == Decimal("39.33")
        assert breakdown.driver_net == Decimal("294.00")

    @pytest.mark.unit
    def test_half_paisa_rounds_up(self) -> None:
        breakdown = calculate_commission_breakdown(Decimal("0.05"), 10, 18)

        assert breakdown.base_commission == Decimal("0.01")
        assert breakdown.gst_on_commission == Decimal("0.00")
        assert breakdown.driver_net == Decimal("0.04")

    @pytest.mark.unit
    def test_fractional_paise_fare_is_rounded(self) -> None:
        breakdown = calculate_commission_breakdown("100.005")

        assert breakdown.total_fare == Decimal("100.01")
        assert breakdown.total_paise == 10001

    @pytest.mark.unit
    def test_float_fare_does_not_pick_up_binary_noise(self) -> None:
        breakdown = calculate_commission_breakdown(0.1 + 0.2)

        assert breakdown.total_fare == Decimal("0.30")

    @pytest.mark.unit
    @pytest.mark.parametrize("commission", ["0", "7.5", "10", "12.5", "15", "33.33", "50"])
    @pytest.mark.parametrize("gst", ["0", "5", "18", "28"])
    def test_split_never_drifts(self, commission: str, gst: str) -> None:
        """Driver share plus platform share always equals the fare exactly."""
        for fare_paise in list(range(1, 400)) + [9999, 12345, 49999, 50000, 123457, 9999999]:
            breakdown = calculate_commission_breakdown(
                from_paise(fare_paise), Decimal(commission), Decimal(gst)
            )

            assert breakdown.driver_net_paise + breakdown.platform_total_paise == fare_paise
            assert (
                breakdown.base_commission_paise + breakdown.gst_paise
                == breakdown.platform_total_paise
            )
            assert breakdown.driver_net >= 0
            for amount in (
                breakdown.base_commission,
                breakdown.gst_on_commission,
                breakdown.platform_total,
                breakdown.driver_net,
            ):
                assert amount == amount.quantize(Decimal("0.01"))

    @pytest.mark.unit
    def test_wire_format(self) -> None:
        wire = calculate_commission_breakdown(Decimal("500"), 15, 18).to_wire()

        assert wire == {
            "passengerPays": "500.00",
            "platformCommission": "75.00",
            "gstOnCommission": "13.50",
            "platformKeeps": "88.50",
            "driverReceives": "411.50",
        }

    @pytest.mark.unit
    @pytest.mark.parametrize("fare", [Decimal("0"), Decimal("-10"), "0.004"])
    def test_rejects_non_positive_fare(self, fare: object) -> None:
        with pytest.raises(PaymentValidationError, match="Total fare must be positive"):
            calculate_commission_breakdown(fare)

    @pytest.mark.unit
    def test_rejects_unparseable_fare(self) -> None:
        with pytest.raises(PaymentValidationError, match="Invalid amount"):
            calculate_commission_breakdown("five hundred")

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "fare", ["NaN", "Infinity", "-Infinity", float("nan"), float("inf"), Decimal("NaN")]
    )
    def test_rejects_non_finite_fare(self, fare: object) -> None:
        with pytest.raises(PaymentValidationError, match="Invalid amount"):
            calculate_commission_breakdown(fare)

    @pytest.mark.unit
    def test_rejects_non_finite_percent(self) -> None:
        with pytest.raises(PaymentValidationError, match="Invalid amount"):
            calculate_commission_breakdown(Decimal("500"), commission_percent="Infinity")

    @pytest.mark.unit
    def test_rejects_fare_beyond_decimal_precision(self) -> None:
        with pytest.raises(PaymentValidationError, match="out of range"):
            calculate_commission_breakdown("1e40")

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "commission,gst,match",
        [
            (Decimal("-1"), Decimal("18"), "Commission percent"),
            (Decimal("100.01"), Decimal("18"), "Commission percent"),
            (Decimal("10"), Decimal("-0.5"), "GST percent"),
            (Decimal("10"), Decimal("101"), "GST percent"),
        ],
    )
    def test_rejects_out_of_range_percent(
        self, commission: Decimal, gst: Decimal, match: str
    ) -> None:
        with pytest.raises(PaymentValidationError, match=match):
            calculate_commission_breakdown(Decimal("500"), commission, gst)


class TestGatewayFees:
    """Test suite for calculate_gateway_fees."""

    @pytest.mark.unit
    def test_fee_on_thousand_rupees(self) -> None:
        fees = calculate_gateway_fees(Decimal("1000"))

        assert fees["gateway_fee"] == Decimal("19.90")
        assert fees["gst_on_fee"] == Decimal("3.58")
        assert fees["total_fee"] == Decimal("23.48")
        assert fees["net_amount"] == Decimal("976.52")

    @pytest.mark.unit
    def test_rejects_non_positive_amount(self) -> None:
        with pytest.raises(PaymentValidationError):
            calculate_gateway_fees(0)


@pytest.mark.unit
def test_paise_conversion() -> None:
    assert to_paise(Decimal("411.50")) == 41150
    assert to_paise(Decimal("0.015")) == 2
    assert from_paise(41150) == Decimal("411.50")
    assert from_paise(1) == Decimal("0.01")


@pytest.mark.unit
def test_rejects_split_exceeding_fare() -> None:
    with pytest.raises(PaymentValidationError, match="exceed the fare"):
        calculate_commission_breakdown(Decimal("500"), Decimal("100"), Decimal("18"))
