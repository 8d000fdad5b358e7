from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

from app.business.revenue.pricing import quantize_money


_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


class _PricedItem(Protocol):
    total_cost: Decimal
    total_proposal: Decimal


@dataclass(frozen=True, slots=True)
class OpportunityFinancials:
    value: Decimal
    gross_profit: Decimal
    gross_profit_margin: int
    weighted_value: Decimal


def margin_for(value: Decimal | None, gross_profit: Decimal | None) -> int:
    value_dec = Decimal(value or 0)
    if value_dec <= 0:
        return 0
    ratio = Decimal(gross_profit or 0) / value_dec * _HUNDRED
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def weighted_value_for(value: Decimal | None, probability: int | None) -> Decimal:
    return quantize_money(Decimal(value or 0) * Decimal(probability or 0) / _HUNDRED)


def sum_items(items: Iterable[_PricedItem]) -> tuple[Decimal, Decimal]:
    total_cost = _ZERO
    total_proposal = _ZERO
    for item in items:
        total_cost += Decimal(item.total_cost)
        total_proposal += Decimal(item.total_proposal)
    return quantize_money(total_cost), quantize_money(total_proposal)


def recompute_opportunity_financials(opportunity: Any, orders: Iterable[Any]) -> OpportunityFinancials:
    """Roll every item of every order up into the opportunity's figures.

    ``value`` is the discount-aware proposal total; ``weighted_value`` is
    derived from the opportunity's probability and is never stored.
    """
    all_items = [item for order in orders for item in order.items]
    total_cost, total_proposal = sum_items(all_items)
    gross_profit = quantize_money(total_proposal - total_cost)
    return OpportunityFinancials(
        value=total_proposal,
        gross_profit=gross_profit,
        gross_profit_margin=margin_for(total_proposal, gross_profit),
        weighted_value=weighted_value_for(total_proposal, getattr(opportunity, "probability", 0)),
    )
