from app.business.revenue.models import RevenueOrder, RevenueOrderItem
from app.business.revenue.schemas import (
    OrderCreate,
    OrderItemCreate,
    OrderItemRead,
    OrderItemUpdate,
    OrderRead,
    OrderUpdate,
    OrderWithItems,
)

__all__ = [
    "RevenueOrder",
    "RevenueOrderItem",
    "OrderCreate",
    "OrderItemCreate",
    "OrderItemRead",
    "OrderItemUpdate",
    "OrderRead",
    "OrderUpdate",
    "OrderWithItems",
]
