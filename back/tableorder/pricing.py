"""
Pricing Calculator

Turns an item subtotal into the service charge / tax / total breakdown.
Rounding is half-up to 2 decimals and is applied at each step, in this order:
service charge, then tax on (subtotal + service charge).
"""

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def to_decimal(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so floats like 0.07 do not carry binary noise
    return Decimal(str(value))


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _percentage(rate: Decimal) -> str:
    return f"{round(float(rate) * 100, 2)}%"


@dataclass(frozen=True)
class PricingBreakdown:
    subtotal: Decimal
    service_charge_rate: Decimal
    service_charge_amount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal

    def as_dict(self) -> dict:
        return {
            "subtotal": float(self.subtotal),
            "service_charge": {
                "rate": float(self.service_charge_rate),
                "amount": float(self.service_charge_amount),
                "percentage": _percentage(self.service_charge_rate),
            },
            "tax": {
                "rate": float(self.tax_rate),
                "amount": float(self.tax_amount),
                "percentage": _percentage(self.tax_rate),
            },
            "total": float(self.total),
        }


def calculate_breakdown(
    subtotal: Decimal | int | float | str,
    service_charge_rate: Decimal | int | float | str,
    tax_rate: Decimal | int | float | str,
) -> PricingBreakdown:
    subtotal = round2(to_decimal(subtotal))
    sc_rate = to_decimal(service_charge_rate)
    tx_rate = to_decimal(tax_rate)

    service_charge_amount = round2(subtotal * sc_rate)
    tax_base = subtotal + service_charge_amount
    tax_amount = round2(tax_base * tx_rate)
    total = tax_base + tax_amount

    return PricingBreakdown(
        subtotal=subtotal,
        service_charge_rate=sc_rate,
        service_charge_amount=service_charge_amount,
        tax_rate=tx_rate,
        tax_amount=tax_amount,
        total=total,
    )


def items_subtotal(lines: Iterable[tuple[Decimal, int]]) -> Decimal:
    """Sum of price x quantity over (price, quantity) pairs."""
    total = Decimal("0")
    for price, quantity in lines:
        total += to_decimal(price) * quantity
    return round2(total)


def breakdown_from_order(order) -> PricingBreakdown:
    """Rebuild the frozen breakdown stored on an Order."""
    return PricingBreakdown(
        subtotal=to_decimal(order.subtotal),
        service_charge_rate=to_decimal(order.service_charge_rate),
        service_charge_amount=to_decimal(order.service_charge_amount),
        tax_rate=to_decimal(order.tax_rate),
        tax_amount=to_decimal(order.tax_amount),
        total=to_decimal(order.total_amount),
    )
