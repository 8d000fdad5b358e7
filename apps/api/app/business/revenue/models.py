from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.business.catalog.models import CatalogProduct
from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RevenueOrder(Base):
    __tablename__ = "revenue_order"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    opportunity_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("crm_opportunity.id", ondelete="CASCADE"),
        nullable=False,
    )
    order_number: Mapped[str] = mapped_column(String(64), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"), server_default="0")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft", server_default="draft")
    order_date: Mapped[date] = mapped_column(Date(), nullable=False, default=date.today)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items: Mapped[list[RevenueOrderItem]] = relationship(
        "app.business.revenue.models.RevenueOrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="RevenueOrderItem.id",
    )

    __table_args__ = (
        UniqueConstraint("order_number", name="uq_revenue_order_number"),
        Index("ix_revenue_order_opportunity_id", "opportunity_id"),
    )


class RevenueOrderItem(Base):
    __tablename__ = "revenue_order_item"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("revenue_order.id", ondelete="CASCADE"),
        nullable=False,
    )
    product_id: Mapped[int] = mapped_column(Integer, ForeignKey("catalog_product.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    cost_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    proposal_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    discount: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"), server_default="0")
    start_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    total_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_proposal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    order: Mapped[RevenueOrder] = relationship("app.business.revenue.models.RevenueOrder", back_populates="items")
    product: Mapped[CatalogProduct] = relationship(CatalogProduct)

    __table_args__ = (
        Index("ix_revenue_order_item_order_id", "order_id"),
        Index("ix_revenue_order_item_product_id", "product_id"),
    )
