# ==== DISCOUNT CALCULATOR ==== #

"""
Discount amount computation.

All amounts are Decimal, rounded half-up to the currency minor unit and
clamped so that 0 <= final_amount <= original_amount.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from discount_engine.business.models import DiscountRuleSnapshot, DiscountType


CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class DiscountBreakdown:
    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal

    @property
    def savings_percentage(self) -> Decimal:
        return savings_percentage(self.original_amount, self.discount_amount)


def calculate_discount(original_amount: Decimal, rule: DiscountRuleSnapshot) -> Decimal:
    """
    Compute the discount for an amount under a rule.

    percentage: original * value / 100. fixed_amount: min(value, original).

    Raises:
        ValueError: unknown discount_type
    """
    original = Decimal(original_amount)
    value = Decimal(rule.discount_value)

    if rule.discount_type == DiscountType.PERCENTAGE.value:
        raw = original * value / HUNDRED
    elif rule.discount_type == DiscountType.FIXED_AMOUNT.value:
        raw = min(value, original)
    else:
        raise ValueError(f"Unknown discount type: {rule.discount_type}")

    discount = _quantize(raw)
    upper = _quantize(max(original, ZERO))
    return min(max(discount, ZERO), upper)


def build_breakdown(original_amount: Decimal, rule: DiscountRuleSnapshot) -> DiscountBreakdown:
    """Discount, final amount and original amount for one application."""
    original = _quantize(Decimal(original_amount))
    discount = calculate_discount(original, rule)
    return DiscountBreakdown(
        original_amount=original,
        discount_amount=discount,
        final_amount=original - discount,
    )


def savings_percentage(original_amount: Decimal, discount_amount: Decimal) -> Decimal:
    """discount / original * 100 to two places; 0 for a zero original."""
    original = Decimal(original_amount)
    if original <= ZERO:
        return ZERO.quantize(CENT)
    return _quantize(Decimal(discount_amount) / original * HUNDRED)
