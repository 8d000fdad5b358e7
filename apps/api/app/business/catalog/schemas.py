from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import Field

from app.core.schemas import CamelModel


ProductType = Literal["onetime", "subscription", "service-based"]


class ProductCreate(CamelModel):
    name: str = Field(min_length=1)
    type: ProductType
    price: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    description: str | None = None
    is_active: bool = True


class ProductUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1)
    type: ProductType | None = None
    price: Decimal | None = Field(default=None, ge=Decimal("0"))
    description: str | None = None
    is_active: bool | None = None


class ProductRead(CamelModel):
    id: int
    name: str
    type: str
    price: Decimal
    description: str | None
    is_active: bool
    created_at: datetime
    updated_at: datetime
