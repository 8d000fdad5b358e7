from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from opentelemetry import trace
from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.business.catalog.models import CatalogProduct
from app.business.revenue.financials import recompute_opportunity_financials, sum_items
from app.business.revenue.models import RevenueOrder, RevenueOrderItem
from app.business.revenue.pricing import ItemTotals, compute_item_totals
from app.business.revenue.schemas import (
    OrderCreate,
    OrderItemCreate,
    OrderItemRead,
    OrderItemUpdate,
    OrderRead,
    OrderUpdate,
    OrderWithItems,
)
from app.core.actor import ActorUser
from app.core.config import get_settings
from app.core.transactions import atomic
from app.crm.errors import ConflictError, NotFoundError, OrderNumberExhaustedError, ValidationError
from app.crm.models import CRMOpportunity
from app.crm.stages import ensure_open
from app.metrics import observe_order_recompute


logger = logging.getLogger("app.revenue")
tracer = trace.get_tracer("app.revenue")

_ITEM_REQUIRED_FIELDS = {"product_id", "quantity", "cost_value", "proposal_value", "discount"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderNumberGenerator:
    """Process-wide ``PREFIX-YYYYMMDDHHMMSS-NNNN`` sequence."""

    def __init__(self, prefix: str, clock: Callable[[], datetime] = utcnow) -> None:
        self.prefix = prefix
        self._clock = clock
        self._lock = threading.Lock()
        self._sequence = 0

    def next_candidate(self) -> str:
        with self._lock:
            self._sequence += 1
            sequence = self._sequence
        return f"{self.prefix}-{self._clock():%Y%m%d%H%M%S}-{sequence:04d}"

    def generate(self, session: Session, max_attempts: int) -> str:
        for _ in range(max_attempts):
            candidate = self.next_candidate()
            if not order_number_exists(session, candidate):
                return candidate
            logger.warning("order_number.collision", extra={"operation": "generate_order_number"})
        raise OrderNumberExhaustedError(
            f"could not allocate a unique order number after {max_attempts} attempts",
            details={"attempts": max_attempts},
        )


def order_number_exists(session: Session, order_number: str) -> bool:
    return session.scalar(select(RevenueOrder.id).where(RevenueOrder.order_number == order_number)) is not None


class OrderService:
    entity_type = "revenue.order"
    item_entity_type = "revenue.order_item"

    def __init__(self, number_generator: OrderNumberGenerator | None = None) -> None:
        settings = get_settings()
        self.number_generator = number_generator or OrderNumberGenerator(settings.order_number_prefix)
        self.max_number_attempts = settings.order_number_max_attempts

    def list_orders(self, session: Session, *, opportunity_id: int | None = None) -> list[OrderRead]:
        stmt = select(RevenueOrder).options(selectinload(RevenueOrder.items)).order_by(RevenueOrder.id)
        if opportunity_id is not None:
            stmt = stmt.where(RevenueOrder.opportunity_id == opportunity_id)
        return [OrderRead.model_validate(row) for row in session.scalars(stmt).all()]

    def get_order(self, session: Session, order_id: int) -> OrderWithItems:
        order = session.scalar(
            select(RevenueOrder)
            .where(RevenueOrder.id == order_id)
            .options(selectinload(RevenueOrder.items).selectinload(RevenueOrderItem.product))
        )
        if order is None:
            raise NotFoundError("order", order_id)
        return OrderWithItems.model_validate(order)

    def create_order(self, session: Session, actor_user: ActorUser, payload: OrderCreate) -> OrderRead:
        opportunity = self._get_opportunity(session, payload.opportunity_id)
        ensure_open(opportunity.stage, "create_order")
        priced = [self._price(session, item.model_dump()) for item in payload.items]

        if payload.order_number is not None:
            order_number = payload.order_number.strip()
            if not order_number:
                raise ValidationError("orderNumber", "orderNumber must not be blank")
            if order_number_exists(session, order_number):
                raise ConflictError("order number already exists", details={"order_number": order_number})
        else:
            order_number = self.number_generator.generate(session, self.max_number_attempts)

        with atomic(session, "order number already exists"):
            order = RevenueOrder(
                opportunity_id=opportunity.id,
                order_number=order_number,
                status=payload.status,
                order_date=payload.order_date or date.today(),
                total_amount=Decimal("0.00"),
            )
            for fields, totals in priced:
                order.items.append(self._build_item(fields, totals))
            session.add(order)
            session.flush()
            self._recompute(session, opportunity, "create_order", order=order)
            created = OrderRead.model_validate(order)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=order.id,
                action="create",
                before=None,
                after=created.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                "revenue.order.created",
                {
                    "order_id": order.id,
                    "opportunity_id": opportunity.id,
                    "order_number": order.order_number,
                    "total_amount": str(order.total_amount),
                },
                actor_user_id=actor_user.user_id,
            )
        return created

    def update_order(self, session: Session, actor_user: ActorUser, order_id: int, payload: OrderUpdate) -> OrderRead:
        order = self._get_order(session, order_id)
        opportunity = self._get_opportunity(session, order.opportunity_id)
        ensure_open(opportunity.stage, "update_order")
        changes = {key: value for key, value in payload.model_dump(exclude_unset=True).items() if value is not None}

        before = OrderRead.model_validate(order).model_dump(mode="json")
        with atomic(session):
            for key, value in changes.items():
                setattr(order, key, value)
            session.flush()
            self._recompute(session, opportunity, "update_order", order=order)
            updated = OrderRead.model_validate(order)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=order.id,
                action="update",
                before=before,
                after=updated.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                "revenue.order.updated",
                {"order_id": order.id, "opportunity_id": opportunity.id, "changes": sorted(changes)},
                actor_user_id=actor_user.user_id,
            )
        return updated

    def delete_order(self, session: Session, actor_user: ActorUser, order_id: int) -> None:
        order = self._get_order(session, order_id)
        opportunity = self._get_opportunity(session, order.opportunity_id)
        ensure_open(opportunity.stage, "delete_order")

        before = OrderRead.model_validate(order).model_dump(mode="json")
        with atomic(session):
            session.delete(order)
            session.flush()
            self._recompute(session, opportunity, "delete_order")
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=order_id,
                action="delete",
                before=before,
                after=None,
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                "revenue.order.deleted",
                {"order_id": order_id, "opportunity_id": opportunity.id},
                actor_user_id=actor_user.user_id,
            )

    def add_item(self, session: Session, actor_user: ActorUser, payload: OrderItemCreate) -> OrderItemRead:
        order = self._get_order(session, payload.order_id)
        opportunity = self._get_opportunity(session, order.opportunity_id)
        ensure_open(opportunity.stage, "add_order_item")
        fields, totals = self._price(session, payload.model_dump(exclude={"order_id"}))

        with atomic(session):
            item = self._build_item(fields, totals)
            order.items.append(item)
            session.flush()
            self._recompute(session, opportunity, "add_order_item", order=order)
            created = OrderItemRead.model_validate(item)
            self._record_item_change(actor_user, "create", None, created.model_dump(mode="json"))
        return created

    def update_item(
        self,
        session: Session,
        actor_user: ActorUser,
        item_id: int,
        payload: OrderItemUpdate,
    ) -> OrderItemRead:
        item = self._get_item(session, item_id)
        order = self._get_order(session, item.order_id)
        opportunity = self._get_opportunity(session, order.opportunity_id)
        ensure_open(opportunity.stage, "update_order_item")

        merged = {
            "product_id": item.product_id,
            "quantity": item.quantity,
            "cost_value": item.cost_value,
            "proposal_value": item.proposal_value,
            "discount": item.discount,
            "start_date": item.start_date,
            "end_date": item.end_date,
        }
        for key, value in payload.model_dump(exclude_unset=True).items():
            if value is None and key in _ITEM_REQUIRED_FIELDS:
                continue
            merged[key] = value
        fields, totals = self._price(session, merged)

        before = OrderItemRead.model_validate(item).model_dump(mode="json")
        with atomic(session):
            for key, value in fields.items():
                setattr(item, key, value)
            item.total_cost = totals.total_cost
            item.total_proposal = totals.total_proposal
            session.flush()
            self._recompute(session, opportunity, "update_order_item", order=order)
            updated = OrderItemRead.model_validate(item)
            self._record_item_change(actor_user, "update", before, updated.model_dump(mode="json"))
        return updated

    def delete_item(self, session: Session, actor_user: ActorUser, item_id: int) -> None:
        item = self._get_item(session, item_id)
        order = self._get_order(session, item.order_id)
        opportunity = self._get_opportunity(session, order.opportunity_id)
        ensure_open(opportunity.stage, "delete_order_item")

        before = OrderItemRead.model_validate(item).model_dump(mode="json")
        with atomic(session):
            order.items.remove(item)
            session.flush()
            self._recompute(session, opportunity, "delete_order_item", order=order)
            self._record_item_change(actor_user, "delete", before, None)

    def _recompute(
        self,
        session: Session,
        opportunity: CRMOpportunity,
        operation: str,
        *,
        order: RevenueOrder | None = None,
    ) -> None:
        """Refresh the order total and roll every order up into the opportunity.

        Runs inside the caller's transaction; a ``row_version`` mismatch on
        the opportunity aborts the whole unit of work.
        """
        with tracer.start_as_current_span("revenue.order.recompute") as span:
            span.set_attribute("revenue.operation", operation)
            span.set_attribute("crm.opportunity_id", opportunity.id)
            if order is not None:
                _, order.total_amount = sum_items(order.items)
                span.set_attribute("revenue.order_id", order.id)
                session.flush()

            orders = session.scalars(
                select(RevenueOrder)
                .where(RevenueOrder.opportunity_id == opportunity.id)
                .options(selectinload(RevenueOrder.items))
            ).all()
            financials = recompute_opportunity_financials(opportunity, orders)

            result = session.execute(
                update(CRMOpportunity)
                .where(and_(CRMOpportunity.id == opportunity.id, CRMOpportunity.row_version == opportunity.row_version))
                .values(
                    value=financials.value,
                    gross_profit=financials.gross_profit,
                    gross_profit_margin=financials.gross_profit_margin,
                    updated_at=utcnow(),
                    row_version=CRMOpportunity.row_version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ConflictError("row_version conflict", details={"opportunity_id": opportunity.id})
            session.refresh(opportunity)

        observe_order_recompute(operation)
        logger.info(
            "order.recomputed",
            extra={
                "operation": operation,
                "opportunity_id": opportunity.id,
                "order_id": order.id if order is not None else None,
                "total_amount": str(order.total_amount) if order is not None else None,
            },
        )

    def _price(self, session: Session, fields: dict[str, Any]) -> tuple[dict[str, Any], ItemTotals]:
        product = session.get(CatalogProduct, fields["product_id"])
        if product is None:
            raise NotFoundError("product", fields["product_id"])
        totals = compute_item_totals(
            product.type,
            fields["quantity"],
            fields["cost_value"],
            fields["proposal_value"],
            fields["discount"],
            fields.get("start_date"),
            fields.get("end_date"),
        )
        return fields, totals

    def _build_item(self, fields: dict[str, Any], totals: ItemTotals) -> RevenueOrderItem:
        return RevenueOrderItem(
            product_id=fields["product_id"],
            quantity=fields["quantity"],
            cost_value=fields["cost_value"],
            proposal_value=fields["proposal_value"],
            discount=fields["discount"],
            start_date=fields.get("start_date"),
            end_date=fields.get("end_date"),
            total_cost=totals.total_cost,
            total_proposal=totals.total_proposal,
        )

    def _record_item_change(
        self,
        actor_user: ActorUser,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        item = after if after is not None else before
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.item_entity_type,
            entity_id=item["id"],
            action=action,
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            f"revenue.order_item.{action}d",
            {"order_item_id": item["id"], "order_id": item["order_id"], "product_id": item["product_id"]},
            actor_user_id=actor_user.user_id,
        )

    def _get_opportunity(self, session: Session, opportunity_id: int) -> CRMOpportunity:
        opportunity = session.get(CRMOpportunity, opportunity_id)
        if opportunity is None:
            raise NotFoundError("opportunity", opportunity_id)
        return opportunity

    def _get_order(self, session: Session, order_id: int) -> RevenueOrder:
        order = session.get(RevenueOrder, order_id)
        if order is None:
            raise NotFoundError("order", order_id)
        return order

    def _get_item(self, session: Session, item_id: int) -> RevenueOrderItem:
        item = session.get(RevenueOrderItem, item_id)
        if item is None:
            raise NotFoundError("order item", item_id)
        return item


order_service = OrderService()
