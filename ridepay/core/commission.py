"""
Fare split calculator.

Splits a passenger fare into the platform commission, GST on that
commission, and the driver's net share. All results are exact to the paisa
and always sum back to the fare.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict

from ridepay.core.errors import PaymentValidationError

PAISE = Decimal("0.01")
HUNDRED = Decimal("100")

DEFAULT_COMMISSION_PERCENT = Decimal("10")
DEFAULT_GST_PERCENT = Decimal("18")

GATEWAY_FEE_PERCENT = Decimal("1.99")
GATEWAY_FEE_GST_PERCENT = Decimal("18")


def to_decimal(value: Decimal | int | float | str) -> Decimal:
    """Convert a finite numeric value to Decimal without picking up float noise."""
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation as e:
            raise PaymentValidationError(f"Invalid amount: {value!r}") from e
    if not result.is_finite():
        raise PaymentValidationError(f"Invalid amount: {value!r}")
    return result


def round_paise(value: Decimal) -> Decimal:
    try:
        return value.quantize(PAISE, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise PaymentValidationError(f"Amount out of range: {value}") from e


def to_paise(amount: Decimal) -> int:
    """Convert a rupee amount to integer paise."""
    return int(round_paise(amount) * HUNDRED)


def from_paise(amount: int) -> Decimal:
    """Convert integer paise to a 2-decimal rupee amount."""
    return (Decimal(amount) / HUNDRED).quantize(PAISE)


@dataclass(frozen=True)
class CommissionBreakdown:
    """Result of splitting a fare. Money fields are 2-decimal rupees."""

    total_fare: Decimal
    commission_percent: Decimal
    base_commission: Decimal
    gst_percent: Decimal
    gst_on_commission: Decimal
    platform_total: Decimal
    driver_net: Decimal

    @property
    def total_paise(self) -> int:
        return to_paise(self.total_fare)

    @property
    def base_commission_paise(self) -> int:
        return to_paise(self.base_commission)

    @property
    def gst_paise(self) -> int:
        return to_paise(self.gst_on_commission)

    @property
    def platform_total_paise(self) -> int:
        return to_paise(self.platform_total)

    @property
    def driver_net_paise(self) -> int:
        return to_paise(self.driver_net)

    def to_wire(self) -> Dict[str, str]:
        """Presentation shape shown to passengers and drivers."""
        return {
            "passengerPays": f"{self.total_fare:.2f}",
            "platformCommission": f"{self.base_commission:.2f}",
            "gstOnCommission": f"{self.gst_on_commission:.2f}",
            "platformKeeps": f"{self.platform_total:.2f}",
            "driverReceives": f"{self.driver_net:.2f}",
        }


def _validate_percent(name: str, percent: Decimal) -> None:
    if percent < 0 or percent > HUNDRED:
        raise PaymentValidationError(f"{name} must be between 0 and 100, got {percent}")


def calculate_commission_breakdown(
    total_fare: Decimal | int | float | str,
    commission_percent: Decimal | int | float | str = DEFAULT_COMMISSION_PERCENT,
    gst_percent: Decimal | int | float | str = DEFAULT_GST_PERCENT,
) -> CommissionBreakdown:
    """
    Split a fare into platform commission, GST and the driver's share.

    The base commission and the GST are each rounded half-up to the paisa
    from their exact values. The platform total is the sum of the two rounded
    amounts, and the driver receives the remainder, so
    ``driver_net + platform_total == total_fare`` holds exactly.

    Args:
        total_fare: Fare paid by the passenger, in rupees
        commission_percent: Platform commission on the fare
        gst_percent: GST charged on the commission

    Returns:
        CommissionBreakdown: The split, in 2-decimal rupees

    Raises:
        PaymentValidationError: If the fare is not positive, a percent is out of
            range, or commission plus GST exceeds the fare
    """
    fare = round_paise(to_decimal(total_fare))
    commission = to_decimal(commission_percent)
    gst_rate = to_decimal(gst_percent)

    if fare <= 0:
        raise PaymentValidationError("Total fare must be positive")
    _validate_percent("Commission percent", commission)
    _validate_percent("GST percent", gst_rate)

    exact_base = fare * commission / HUNDRED
    base_commission = round_paise(exact_base)
    gst = round_paise(exact_base * gst_rate / HUNDRED)
    platform_total = base_commission + gst
    driver_net = fare - platform_total
    if driver_net < 0:
        raise PaymentValidationError("Commission and GST exceed the fare")

    return CommissionBreakdown(
        total_fare=fare,
        commission_percent=commission,
        base_commission=base_commission,
        gst_percent=gst_rate,
        gst_on_commission=gst,
        platform_total=platform_total,
        driver_net=driver_net,
    )


def calculate_gateway_fees(amount: Decimal | int | float | str) -> Dict[str, Decimal]:
    """
    Gateway processing fee the platform pays on a captured amount.

    Returns the fee, the GST on the fee, their total, and what the platform
    nets after fees, all in 2-decimal rupees.
    """
    value = to_decimal(amount)
    if value <= 0:
        raise PaymentValidationError("Amount must be positive")

    fee = round_paise(value * GATEWAY_FEE_PERCENT / HUNDRED)
    gst_on_fee = round_paise(fee * GATEWAY_FEE_GST_PERCENT / HUNDRED)
    total_fee = fee + gst_on_fee
    return {
        "gateway_fee": fee,
        "gst_on_fee": gst_on_fee,
        "total_fee": total_fee,
        "net_amount": round_paise(value) - total_fee,
    }
