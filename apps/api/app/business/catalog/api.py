from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.business.catalog.schemas import ProductCreate, ProductRead, ProductUpdate
from app.business.catalog.service import catalog_service
from app.core.actor import ActorUser, get_current_user
from app.core.database import get_db


router = APIRouter(prefix="/api/products", tags=["catalog"])


@router.get("", response_model=list[ProductRead])
def list_products(
    active: bool | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[ProductRead]:
    return catalog_service.list_products(db, active=active)


@router.post("", response_model=ProductRead, status_code=status.HTTP_201_CREATED)
def create_product(
    payload: ProductCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProductRead:
    return catalog_service.create_product(db, user, payload)


@router.get("/{product_id}", response_model=ProductRead)
def get_product(product_id: int, db: Session = Depends(get_db)) -> ProductRead:
    return catalog_service.get_product(db, product_id)


@router.patch("/{product_id}", response_model=ProductRead)
def update_product(
    product_id: int,
    payload: ProductUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProductRead:
    return catalog_service.update_product(db, user, product_id, payload)


@router.delete("/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_product(
    product_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    catalog_service.delete_product(db, user, product_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
