"""Order-item pricing.

Each product type has a pricing strategy with the same ``compute_totals``
contract. Subscriptions with a full date range multiply by the inclusive
number of calendar months the range touches; partial months are not
prorated by day.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import ClassVar

from app.crm.errors import ValidationError


_CENT = Decimal("0.01")
_HUNDRED = Decimal("100")


@dataclass(frozen=True, slots=True)
class ItemTotals:
    total_cost: Decimal
    total_proposal: Decimal


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def month_span(start: date, end: date) -> int:
    if end < start:
        raise ValidationError("endDate", "endDate must be on or after startDate")
    return (end.year - start.year) * 12 + (end.month - start.month) + 1


def discount_multiplier(discount_percent: Decimal) -> Decimal:
    return Decimal("1") - Decimal(discount_percent) / _HUNDRED


@dataclass(frozen=True, slots=True)
class PeriodPricing:
    """Totals are ``units x unit value x (1 - discount/100)``, where units is quantity times periods."""

    product_type: ClassVar[str]

    def periods(self) -> int:
        return 1

    def compute_totals(self, quantity: int, cost_value: Decimal, proposal_value: Decimal, discount_percent: Decimal) -> ItemTotals:
        return _priced(quantity * self.periods(), cost_value, proposal_value, discount_percent)


@dataclass(frozen=True, slots=True)
class OneTimePricing(PeriodPricing):
    product_type: ClassVar[str] = "onetime"


@dataclass(frozen=True, slots=True)
class ServiceBasedPricing(PeriodPricing):
    product_type: ClassVar[str] = "service-based"


@dataclass(frozen=True, slots=True)
class SubscriptionPricing(PeriodPricing):
    product_type: ClassVar[str] = "subscription"

    start_date: date
    end_date: date

    def periods(self) -> int:
        return month_span(self.start_date, self.end_date)


def _priced(units: int, cost_value: Decimal, proposal_value: Decimal, discount_percent: Decimal) -> ItemTotals:
    multiplier = discount_multiplier(discount_percent)
    return ItemTotals(
        total_cost=quantize_money(Decimal(units) * Decimal(cost_value) * multiplier),
        total_proposal=quantize_money(Decimal(units) * Decimal(proposal_value) * multiplier),
    )


def pricing_for(product_type: str, start_date: date | None = None, end_date: date | None = None) -> PeriodPricing:
    if product_type == "subscription":
        if start_date is not None and end_date is not None:
            return SubscriptionPricing(start_date=start_date, end_date=end_date)
        # A subscription without a full range is priced as a single period.
        return OneTimePricing()
    for strategy in (OneTimePricing, ServiceBasedPricing):
        if product_type == strategy.product_type:
            return strategy()
    raise ValidationError("productType", f"unknown product type '{product_type}'")


def _validate_inputs(quantity: int, cost_value: Decimal, proposal_value: Decimal, discount_percent: Decimal) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity", "quantity must be a whole number")
    if quantity < 1:
        raise ValidationError("quantity", "quantity must be at least 1")
    if Decimal(cost_value) < 0:
        raise ValidationError("costValue", "costValue must not be negative")
    if Decimal(proposal_value) < 0:
        raise ValidationError("proposalValue", "proposalValue must not be negative")
    if Decimal(discount_percent) < 0:
        raise ValidationError("discount", "discount must not be negative")
    if Decimal(discount_percent) > _HUNDRED:
        raise ValidationError("discount", "discount must not exceed 100")


def compute_item_totals(
    product_type: str,
    quantity: int,
    cost_value: Decimal | int | str,
    proposal_value: Decimal | int | str,
    discount_percent: Decimal | int | str = Decimal("0"),
    start_date: date | None = None,
    end_date: date | None = None,
) -> ItemTotals:
    cost = Decimal(str(cost_value))
    proposal = Decimal(str(proposal_value))
    discount = Decimal(str(discount_percent))
    _validate_inputs(quantity, cost, proposal, discount)
    strategy = pricing_for(product_type, start_date, end_date)
    return strategy.compute_totals(quantity, cost, proposal, discount)
