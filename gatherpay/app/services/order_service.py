"""
services/order_service.py: order workflow around the settlement engine.

    pending ──assign_splits──▶ splitting ──mark_delivered──▶ delivering
                                   │                             │
                         approve_split (members)      confirm_received (members)
                                                      list_no_show_candidates
                                                                 │
                                         SettlementEngine.complete_order ──▶ completed

Authorization rules:
  - assign_splits, mark_delivered, list_no_show_candidates: order leader only
  - approve_split, confirm_received: the member who owns the item
  - list_splits: the leader or any member with an item

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
  - Commits are the route's responsibility; only flush here.
  - Money never moves here. Settlement and penalties go through the engine.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from gatherpay.app.errors import AppError, ErrorCode
from gatherpay.app.models.order import Order, OrderItem, OrderStatus
from gatherpay.app.services.settlement_service import (
    require_open_order,
    require_order_leader,
    splits_from_items,
)
from gatherpay.app.services.split_calculator import OrderSplit, calculate_split


# ── Private helpers ────────────────────────────────────────────────────────

def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone=True columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _require_status(order: Order, *allowed: OrderStatus) -> None:
    if order.status not in allowed:
        expected = " or ".join(f"'{s.value}'" for s in allowed)
        raise AppError(
            ErrorCode.INVALID_ORDER_STATUS,
            f"Order {order.id} is '{order.status.value}'; expected {expected}.",
            409,
        )


def _require_own_item(order: Order, user_id: int) -> OrderItem:
    item = order.item_for(user_id)
    if item is None:
        raise AppError(
            ErrorCode.ITEM_NOT_FOUND,
            f"User {user_id} has no item in order {order.id}.",
            404,
            details={"user_id": user_id},
        )
    return item


# ── Public service functions ───────────────────────────────────────────────

def get_order_or_404(order_id: int, session: Session) -> Order:
    """Returns the Order or raises ORDER_NOT_FOUND (404)."""
    order = session.get(Order, order_id)
    if order is None:
        raise AppError(
            ErrorCode.ORDER_NOT_FOUND,
            f"Order {order_id} does not exist.",
            404,
        )
    return order


def assign_splits(
        order_id: int,
        caller_id: int,
        total_tax,
        total_discount,
        session: Session,
        reconcile_remainder: bool = False,
) -> list[OrderSplit]:
    """
    Runs the split calculator over the order's items and writes the result
    onto them. Every approval is reset: members approve the new numbers.

    Recalculating is allowed until delivery starts.
    """
    order = require_open_order(session.get(Order, order_id), order_id)
    require_order_leader(order, caller_id, "assign splits")
    _require_status(order, OrderStatus.PENDING, OrderStatus.SPLITTING)

    splits = calculate_split(
        order.items,
        total_tax,
        total_discount,
        reconcile_remainder=reconcile_remainder,
    )

    by_user = {item.user_id: item for item in order.items}
    for split in splits:
        item = by_user[split.user_id]
        item.tax_share = split.tax_share
        item.discount_share = split.discount_share
        item.final_amount = split.final_amount
        item.approved = False

    order.total_tax = Decimal(str(total_tax))
    order.total_discount = Decimal(str(total_discount))
    order.total_amount = sum((s.final_amount for s in splits), Decimal("0.00"))
    order.status = OrderStatus.SPLITTING
    session.flush()
    return splits


def list_splits(order_id: int, caller_id: int, session: Session) -> Order:
    """Returns the order for split display. Caller must be its leader or a member."""
    order = get_order_or_404(order_id, session)
    if caller_id != order.leader_id and order.item_for(caller_id) is None:
        raise AppError(
            ErrorCode.FORBIDDEN,
            f"You are not part of order {order_id}.",
            403,
        )
    return order


def approve_split(order_id: int, caller_id: int, session: Session) -> OrderItem:
    """Approves the caller's own split. Approving twice is a no-op."""
    order = require_open_order(session.get(Order, order_id), order_id)
    _require_status(order, OrderStatus.SPLITTING)
    item = _require_own_item(order, caller_id)
    if not item.approved:
        item.approved = True
        session.flush()
    return item


def mark_delivered(
        order_id: int,
        caller_id: int,
        session: Session,
        now: datetime | None = None,
) -> Order:
    """Leader reports the delivery has arrived; the no-show window starts now."""
    order = require_open_order(session.get(Order, order_id), order_id)
    require_order_leader(order, caller_id, "mark it delivered")
    _require_status(order, OrderStatus.SPLITTING)

    order.status = OrderStatus.DELIVERING
    order.delivered_at = now or datetime.now(timezone.utc)
    session.flush()
    return order


def confirm_received(
        order_id: int,
        caller_id: int,
        session: Session,
        now: datetime | None = None,
) -> OrderItem:
    """Member confirms pickup of their item. Confirming twice is a no-op."""
    order = require_open_order(session.get(Order, order_id), order_id)
    _require_status(order, OrderStatus.DELIVERING)
    item = _require_own_item(order, caller_id)

    if item.no_show:
        raise AppError(
            ErrorCode.ALREADY_NO_SHOW,
            f"User {caller_id} was already marked as a no-show for order {order_id}.",
            422,
            details={"user_id": caller_id},
        )
    if not item.received:
        item.received = True
        item.received_at = now or datetime.now(timezone.utc)
        session.flush()
    return item


def list_no_show_candidates(
        order_id: int,
        caller_id: int,
        window_minutes: int,
        session: Session,
        now: datetime | None = None,
) -> list[OrderItem]:
    """
    Members who have neither collected their item nor been penalized once
    `window_minutes` have passed since delivery. The scheduler that acts on
    this list lives outside the engine.
    """
    order = get_order_or_404(order_id, session)
    require_order_leader(order, caller_id, "list no-show candidates")

    if order.status != OrderStatus.DELIVERING or order.delivered_at is None:
        return []

    now = now or datetime.now(timezone.utc)
    deadline = _as_utc(order.delivered_at) + timedelta(minutes=window_minutes)
    if now < deadline:
        return []

    return [
        item for item in order.items
        if item.user_id != order.leader_id and not item.received and not item.no_show
    ]


def build_settlement_splits(order: Order) -> list[OrderSplit]:
    """OrderSplit values for every item, as persisted by assign_splits()."""
    return splits_from_items(order.items)
