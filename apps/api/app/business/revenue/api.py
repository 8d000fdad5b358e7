from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.business.revenue.schemas import (
    OrderCreate,
    OrderItemCreate,
    OrderItemRead,
    OrderItemUpdate,
    OrderRead,
    OrderUpdate,
    OrderWithItems,
)
from app.business.revenue.service import order_service
from app.core.actor import ActorUser, get_current_user
from app.core.database import get_db


router = APIRouter(prefix="/api/orders", tags=["revenue.orders"])
order_items_router = APIRouter(prefix="/api/order-items", tags=["revenue.order_items"])


@router.get("", response_model=list[OrderRead])
def list_orders(
    opportunity_id: int | None = Query(default=None, alias="opportunityId"),
    db: Session = Depends(get_db),
) -> list[OrderRead]:
    return order_service.list_orders(db, opportunity_id=opportunity_id)


@router.post("", response_model=OrderRead, status_code=status.HTTP_201_CREATED)
def create_order(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OrderRead:
    return order_service.create_order(db, user, payload)


@router.get("/{order_id}", response_model=OrderWithItems)
def get_order(order_id: int, db: Session = Depends(get_db)) -> OrderWithItems:
    return order_service.get_order(db, order_id)


@router.patch("/{order_id}", response_model=OrderRead)
def update_order(
    order_id: int,
    payload: OrderUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OrderRead:
    return order_service.update_order(db, user, order_id, payload)


@router.delete("/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_order(
    order_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    order_service.delete_order(db, user, order_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@order_items_router.post("", response_model=OrderItemRead, status_code=status.HTTP_201_CREATED)
def add_order_item(
    payload: OrderItemCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OrderItemRead:
    return order_service.add_item(db, user, payload)


@order_items_router.patch("/{item_id}", response_model=OrderItemRead)
def update_order_item(
    item_id: int,
    payload: OrderItemUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OrderItemRead:
    return order_service.update_item(db, user, item_id, payload)


@order_items_router.delete("/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_order_item(
    item_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    order_service.delete_item(db, user, item_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
