"""
models/order.py: Order and OrderItem table definitions.

An order belongs to exactly one group and holds one item per participating
member (the "items: userId → OrderItem" mapping). Split results are
persisted onto the items; settlement reads them back.

Key design points:
  - Every monetary column is Numeric(12, 2), never Float.
  - `group_id` is a plain reference: the group row is deleted after
    settlement while the completed order is kept.
  - `version` is an optimistic-lock column. Two transactions that both
    modify the same order cannot both commit; the loser gets a
    StaleDataError, which the unit of work reports as a TransactionConflict.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gatherpay.app.extensions import db


class OrderStatus(str, enum.Enum):
    PENDING    = "pending"
    SPLITTING  = "splitting"
    DELIVERING = "delivering"
    COMPLETED  = "completed"
    CANCELLED  = "cancelled"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class Order(db.Model):
    __tablename__ = "orders"

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_orders_total_amount_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    group_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        index=True,
    )

    leader_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
    )

    # Reference to the uploaded order confirmation (media upload is external).
    screenshot_url: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
    )

    status: Mapped[OrderStatus] = mapped_column(
        Enum(
            OrderStatus,
            name="order_status_enum",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=OrderStatus.PENDING,
    )

    # Inputs of the last split calculation.
    total_tax: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
    )
    total_discount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
    )

    # Stamped by settlement.
    platform_fee: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    delivered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )

    __mapper_args__ = {"version_id_col": version}

    # ── Relationships ──────────────────────────────────────────────────────

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="OrderItem.id",
    )

    def item_for(self, user_id: int) -> "OrderItem | None":
        return next((item for item in self.items if item.user_id == user_id), None)

    @property
    def is_closed(self) -> bool:
        return self.status in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<Order id={self.id} group_id={self.group_id} "
            f"status={self.status.value if self.status else None}>"
        )


class OrderItem(db.Model):
    __tablename__ = "order_items"

    __table_args__ = (
        UniqueConstraint("order_id", "user_id", name="uq_order_items_order_user"),
        CheckConstraint("item_mrp >= 0", name="ck_order_items_item_mrp_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    description: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
    )

    item_mrp: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # Written by the split calculator.
    tax_share: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00"),
    )
    discount_share: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00"),
    )
    final_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00"),
    )

    approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    received: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    received_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    no_show: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    no_show_penalty: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2), nullable=True,
    )
    no_show_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    order: Mapped["Order"] = relationship(
        "Order",
        back_populates="items",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<OrderItem order_id={self.order_id} user_id={self.user_id} "
            f"final_amount={self.final_amount} approved={self.approved}>"
        )
