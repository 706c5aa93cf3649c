"""
services/no_show_service.py: penalty for a member who did not collect their item.

apply_no_show_once() is one transaction attempt, shaped like
settle_order_once(): read-checks first, writes after, no commit.

Penalty = round2(item.final_amount × penalty_percentage / 100), moved from
the absent member to the leader as a paired debit/credit. The item is then
marked no_show with the penalty and a timestamp, which makes a second call
for the same member fail with ALREADY_NO_SHOW instead of charging twice.

Concurrent calls for the same item both pass the ALREADY_NO_SHOW check only
if they read before either commits; the OrderItem version column makes the
second commit fail with a StaleDataError, the retry re-reads the item and
the rerun then raises ALREADY_NO_SHOW.

Read-checks, in order:
  order exists and is open        ORDER_NOT_FOUND (404) / ORDER_COMPLETED, ORDER_CANCELLED (409)
  order belongs to the group      ORDER_NOT_FOUND (404)
  caller is the order's leader    FORBIDDEN (403)
  member is not the leader        SELF_PENALTY (422)
  member has an item              ITEM_NOT_FOUND (404)
  item not already no_show        ALREADY_NO_SHOW (422)
  item not already received       ITEM_ALREADY_RECEIVED (422)
  both wallets exist              USER_NOT_FOUND / WALLET_NOT_FOUND (404)
  member can cover the penalty    INSUFFICIENT_BALANCE (422)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from gatherpay.app.errors import AppError, ErrorCode
from gatherpay.app.models.ledger_entry import EntryType
from gatherpay.app.models.order import OrderItem
from gatherpay.app.services.settlement_service import (
    HUNDRED,
    require_open_order,
    require_order_in_group,
    require_order_leader,
    require_sufficient_balance,
)
from gatherpay.app.services.split_calculator import round2
from gatherpay.app.services.unit_of_work import LedgerUnitOfWork


@dataclass(frozen=True)
class NoShowResult:
    group_id: int
    order_id: int
    user_id: int
    leader_id: int
    penalty: Decimal

    def to_dict(self) -> dict:
        return {
            "group_id": self.group_id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "leader_id": self.leader_id,
            "penalty": self.penalty,
        }


def compute_penalty(final_amount: Decimal, penalty_percentage) -> Decimal:
    return round2(Decimal(final_amount) * Decimal(penalty_percentage) / HUNDRED)


def _require_item(order, user_id: int) -> OrderItem:
    item = order.item_for(user_id)
    if item is None:
        raise AppError(
            ErrorCode.ITEM_NOT_FOUND,
            f"User {user_id} has no item in order {order.id}.",
            404,
            details={"user_id": user_id},
        )
    if item.no_show:
        raise AppError(
            ErrorCode.ALREADY_NO_SHOW,
            f"User {user_id} is already marked as a no-show for order {order.id}.",
            422,
            details={"user_id": user_id},
        )
    if item.received:
        raise AppError(
            ErrorCode.ITEM_ALREADY_RECEIVED,
            f"User {user_id} has already collected their item.",
            422,
            details={"user_id": user_id},
        )
    return item


def apply_no_show_once(
        uow: LedgerUnitOfWork,
        *,
        group_id: int,
        order_id: int,
        user_id: int,
        leader_id: int,
        penalty_percentage,
) -> NoShowResult:
    """One no-show attempt. Must run inside `with uow:`."""
    order = require_open_order(uow.get_order(order_id), order_id)
    require_order_in_group(order, group_id)
    require_order_leader(order, leader_id, "mark a no-show")

    if user_id == leader_id:
        raise AppError(
            ErrorCode.SELF_PENALTY,
            "The leader cannot mark themselves as a no-show.",
            422,
            details={"user_id": user_id},
        )

    item = _require_item(order, user_id)
    wallets = uow.require_wallets([user_id, leader_id])

    penalty = compute_penalty(item.final_amount, penalty_percentage)
    require_sufficient_balance(wallets[user_id], user_id, penalty)

    if penalty > 0:
        uow.atomic_adjust(user_id, -penalty)
        uow.append_ledger_entry(
            entry_type=EntryType.DEBIT,
            user_id=user_id,
            amount=penalty,
            description=f"No-show penalty for group order {order_id}",
            group_id=group_id,
            order_id=order_id,
            counterparty_user_id=leader_id,
        )
        uow.atomic_adjust(leader_id, penalty)
        uow.append_ledger_entry(
            entry_type=EntryType.CREDIT,
            user_id=leader_id,
            amount=penalty,
            description=f"No-show compensation from user {user_id} for group order {order_id}",
            group_id=group_id,
            order_id=order_id,
            counterparty_user_id=user_id,
        )

    item.no_show = True
    item.no_show_penalty = penalty
    item.no_show_at = datetime.now(timezone.utc)

    uow.flush()

    return NoShowResult(
        group_id=group_id,
        order_id=order_id,
        user_id=user_id,
        leader_id=leader_id,
        penalty=penalty,
    )
