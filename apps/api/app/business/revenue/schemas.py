from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import Field

from app.business.catalog.schemas import ProductRead
from app.core.schemas import CamelModel


OrderStatus = Literal["draft", "pending", "confirmed", "shipped", "delivered", "cancelled"]


class OrderItemInput(CamelModel):
    product_id: int
    quantity: int = 1
    cost_value: Decimal = Decimal("0")
    proposal_value: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    start_date: date | None = None
    end_date: date | None = None


class OrderItemCreate(OrderItemInput):
    order_id: int


class OrderItemUpdate(CamelModel):
    product_id: int | None = None
    quantity: int | None = None
    cost_value: Decimal | None = None
    proposal_value: Decimal | None = None
    discount: Decimal | None = None
    start_date: date | None = None
    end_date: date | None = None


class OrderItemRead(CamelModel):
    id: int
    order_id: int
    product_id: int
    quantity: int
    cost_value: Decimal
    proposal_value: Decimal
    discount: Decimal
    start_date: date | None
    end_date: date | None
    total_cost: Decimal
    total_proposal: Decimal
    created_at: datetime


class OrderItemWithProduct(OrderItemRead):
    product: ProductRead | None = None


class OrderCreate(CamelModel):
    opportunity_id: int
    order_number: str | None = Field(default=None, min_length=1, max_length=64)
    status: OrderStatus = "draft"
    order_date: date | None = None
    items: list[OrderItemInput] = Field(default_factory=list)


class OrderUpdate(CamelModel):
    status: OrderStatus | None = None
    order_date: date | None = None


class OrderRead(CamelModel):
    id: int
    opportunity_id: int
    order_number: str
    total_amount: Decimal
    status: OrderStatus | str
    order_date: date
    created_at: datetime
    updated_at: datetime
    items: list[OrderItemRead] = Field(default_factory=list)


class OrderWithItems(OrderRead):
    items: list[OrderItemWithProduct] = Field(default_factory=list)
