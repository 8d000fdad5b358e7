from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app import audit
from app.business.catalog.models import CatalogProduct
from app.business.catalog.schemas import ProductCreate, ProductRead, ProductUpdate
from app.business.revenue.models import RevenueOrderItem
from app.core.actor import ActorUser
from app.core.transactions import atomic
from app.crm.errors import ConflictError, NotFoundError


@dataclass(slots=True)
class CatalogService:
    entity_type: str = "catalog.product"

    def list_products(self, session: Session, *, active: bool | None = None) -> list[ProductRead]:
        stmt = select(CatalogProduct).order_by(CatalogProduct.id)
        if active is not None:
            stmt = stmt.where(CatalogProduct.is_active.is_(active))
        return [ProductRead.model_validate(row) for row in session.scalars(stmt).all()]

    def get_product(self, session: Session, product_id: int) -> ProductRead:
        return ProductRead.model_validate(self.get_product_row(session, product_id))

    def create_product(self, session: Session, actor_user: ActorUser, payload: ProductCreate) -> ProductRead:
        with atomic(session):
            product = CatalogProduct(**payload.model_dump())
            product.name = product.name.strip()
            session.add(product)
            session.flush()
            created = ProductRead.model_validate(product)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=product.id,
                action="create",
                before=None,
                after=created.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
        return created

    def update_product(
        self,
        session: Session,
        actor_user: ActorUser,
        product_id: int,
        payload: ProductUpdate,
    ) -> ProductRead:
        product = self.get_product_row(session, product_id)
        changes = payload.model_dump(exclude_unset=True)
        if not changes:
            return ProductRead.model_validate(product)
        if changes.get("type") is not None and changes["type"] != product.type and self._reference_count(session, product.id):
            raise ConflictError(
                "product type cannot change while order items reference it",
                details={"product_id": product.id},
            )

        before = ProductRead.model_validate(product).model_dump(mode="json")
        with atomic(session):
            for key, value in changes.items():
                if value is None and key in {"name", "type", "price", "is_active"}:
                    continue
                setattr(product, key, value)
            session.flush()
            updated = ProductRead.model_validate(product)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=product.id,
                action="update",
                before=before,
                after=updated.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
        return updated

    def delete_product(self, session: Session, actor_user: ActorUser, product_id: int) -> None:
        product = self.get_product_row(session, product_id)
        references = self._reference_count(session, product.id)
        if references:
            raise ConflictError(
                "product is referenced by order items",
                details={"product_id": product.id, "order_items": references},
            )
        before = ProductRead.model_validate(product).model_dump(mode="json")
        with atomic(session):
            session.delete(product)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=product_id,
                action="delete",
                before=before,
                after=None,
                correlation_id=actor_user.correlation_id,
            )

    def get_product_row(self, session: Session, product_id: int) -> CatalogProduct:
        product = session.get(CatalogProduct, product_id)
        if product is None:
            raise NotFoundError("product", product_id)
        return product

    def _reference_count(self, session: Session, product_id: int) -> int:
        return int(
            session.scalar(select(func.count()).select_from(RevenueOrderItem).where(RevenueOrderItem.product_id == product_id))
            or 0
        )


catalog_service = CatalogService()
