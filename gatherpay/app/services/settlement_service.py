"""
services/settlement_service.py: atomic multi-party settlement of a group order.

settle_order_once() is the body of ONE transaction attempt. It performs every
read-check first and only then issues writes, all through the unit of work it
is given. It never commits, sleeps or retries: the caller wraps it as

    policy.run(lambda: _in_unit_of_work(settle_order_once, ...))

(see SettlementEngine in services/engine.py). settle_persisted_order_once()
is the same attempt with the splits read from the locked order items.

Read-checks, in order:
  1. splits non-empty, no duplicate user          INVALID_ITEMS / DUPLICATE_SPLIT_USER (400)
  2. order exists and is open                     ORDER_NOT_FOUND (404)
                                                  ORDER_COMPLETED / ORDER_CANCELLED (409)
  3. group exists, order belongs to it, 'ordered' GROUP_NOT_FOUND / ORDER_NOT_FOUND (404)
                                                  INVALID_GROUP_STATUS (409)
  4. caller is the order's leader                 FORBIDDEN (403)
  5. every split user is an active member         SPLIT_USER_NOT_MEMBER (422)
  6. every split user and the leader has a wallet USER_NOT_FOUND / WALLET_NOT_FOUND (404)
  7. every split approved                         SPLITS_NOT_APPROVED (422)
  8. every non-leader can cover their split       INSUFFICIENT_BALANCE (422)

Writes (only after all checks pass):
  - debit each non-leader member by split.final_amount + debit entry
  - credit the leader total − platform fee (+ reward coins) + credit entry
  - order → completed, completed_at, platform_fee, total_amount
  - group deleted, or archived with status=completed

The leader's own split counts toward the total but is never debited.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal

from gatherpay.app.errors import AppError, ErrorCode
from gatherpay.app.models.group import Group, GroupStatus
from gatherpay.app.models.ledger_entry import EntryType
from gatherpay.app.models.order import Order, OrderStatus
from gatherpay.app.services.split_calculator import OrderSplit, round2, split_total
from gatherpay.app.services.unit_of_work import LedgerUnitOfWork

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class SettlementResult:
    group_id: int
    order_id: int
    leader_id: int
    total_amount: Decimal
    platform_fee: Decimal
    leader_credit: Decimal
    reward_coins: int
    debits: dict[int, Decimal] = field(default_factory=dict)
    group_archived: bool = False
    split_user_ids: tuple[int, ...] = ()

    def to_dict(self) -> dict:
        return {
            "group_id": self.group_id,
            "order_id": self.order_id,
            "leader_id": self.leader_id,
            "total_amount": self.total_amount,
            "platform_fee": self.platform_fee,
            "leader_credit": self.leader_credit,
            "reward_coins": self.reward_coins,
            "debits": {str(uid): amount for uid, amount in self.debits.items()},
            "group_archived": self.group_archived,
        }


# ── Fee / reward arithmetic ────────────────────────────────────────────────

def compute_platform_fee(total_amount: Decimal, fee_percentage: Decimal) -> Decimal:
    return round2(total_amount * Decimal(fee_percentage) / HUNDRED)


def compute_leader_reward(total_amount: Decimal, reward_percentage: Decimal) -> int:
    """Whole reward coins, rounded down."""
    raw = total_amount * Decimal(reward_percentage) / HUNDRED
    return int(raw.to_integral_value(rounding=ROUND_FLOOR))


# ── Read-check helpers (shared with no_show_service) ───────────────────────

def require_open_order(order: Order | None, order_id: int) -> Order:
    if order is None:
        raise AppError(
            ErrorCode.ORDER_NOT_FOUND,
            f"Order {order_id} does not exist.",
            404,
        )
    if order.status == OrderStatus.COMPLETED:
        raise AppError(
            ErrorCode.ORDER_COMPLETED,
            f"Order {order_id} has already been completed.",
            409,
        )
    if order.status == OrderStatus.CANCELLED:
        raise AppError(
            ErrorCode.ORDER_CANCELLED,
            f"Order {order_id} was cancelled.",
            409,
        )
    return order


def require_order_in_group(order: Order, group_id: int) -> None:
    if order.group_id != group_id:
        raise AppError(
            ErrorCode.ORDER_NOT_FOUND,
            f"Order {order.id} does not belong to group {group_id}.",
            404,
        )


def require_order_leader(order: Order, leader_id: int, action: str) -> None:
    if order.leader_id != leader_id:
        raise AppError(
            ErrorCode.FORBIDDEN,
            f"Only the leader of order {order.id} may {action}.",
            403,
        )


def _require_ordered_group(group: Group | None, group_id: int) -> Group:
    if group is None:
        raise AppError(
            ErrorCode.GROUP_NOT_FOUND,
            f"Group {group_id} does not exist.",
            404,
        )
    if group.status != GroupStatus.ORDERED:
        raise AppError(
            ErrorCode.INVALID_GROUP_STATUS,
            f"Group {group_id} is '{group.status.value}'; settlement requires 'ordered'.",
            409,
        )
    return group


def _validate_split_shape(splits: list[OrderSplit]) -> None:
    if not splits:
        raise AppError(
            ErrorCode.INVALID_ITEMS,
            "At least one split is required to settle an order.",
            400,
            field="splits",
        )
    seen: set[int] = set()
    for split in splits:
        if split.user_id in seen:
            raise AppError(
                ErrorCode.DUPLICATE_SPLIT_USER,
                f"User {split.user_id} appears more than once in the splits.",
                400,
                field="splits",
                details={"user_id": split.user_id},
            )
        seen.add(split.user_id)


def _require_split_users_are_members(
        splits: list[OrderSplit],
        group: Group,
        leader_id: int,
) -> None:
    member_ids = group.active_member_ids
    if leader_id not in member_ids:
        raise AppError(
            ErrorCode.SPLIT_USER_NOT_MEMBER,
            f"Leader {leader_id} is not an active member of group {group.id}.",
            422,
            details={"user_id": leader_id},
        )
    for split in splits:
        if split.user_id not in member_ids:
            raise AppError(
                ErrorCode.SPLIT_USER_NOT_MEMBER,
                f"User {split.user_id} is not an active member of group {group.id}.",
                422,
                field="splits",
                details={"user_id": split.user_id},
            )


def _require_all_approved(splits: list[OrderSplit]) -> None:
    pending = [s.user_id for s in splits if not s.approved]
    if pending:
        raise AppError(
            ErrorCode.SPLITS_NOT_APPROVED,
            "Not all splits have been approved.",
            422,
            field="splits",
            details={"pending_user_ids": pending},
        )


def require_sufficient_balance(wallet, user_id: int, required: Decimal) -> None:
    if wallet.balance < required:
        raise AppError(
            ErrorCode.INSUFFICIENT_BALANCE,
            f"Insufficient balance for user {user_id}: "
            f"needs {required}, has {wallet.balance}.",
            422,
            details={
                "user_id": user_id,
                "required": str(required),
                "available": str(wallet.balance),
            },
        )


# ── Transaction body ───────────────────────────────────────────────────────

def settle_order_once(
        uow: LedgerUnitOfWork,
        *,
        group_id: int,
        order_id: int,
        leader_id: int,
        splits: list[OrderSplit],
        fee_percentage: Decimal,
        reward_percentage: Decimal = Decimal("0"),
        archive_group: bool = False,
) -> SettlementResult:
    """
    One settlement attempt. Must run inside `with uow:`; any exception
    raised here rolls back every write made so far.
    """
    _validate_split_shape(splits)

    order = require_open_order(uow.get_order(order_id), order_id)
    group = _require_ordered_group(uow.get_group(group_id), group_id)
    require_order_in_group(order, group_id)
    require_order_leader(order, leader_id, "complete it")
    _require_split_users_are_members(splits, group, leader_id)

    wallets = uow.require_wallets([s.user_id for s in splits] + [leader_id])

    _require_all_approved(splits)

    payers = [s for s in splits if s.user_id != leader_id]
    for split in payers:
        require_sufficient_balance(wallets[split.user_id], split.user_id, split.final_amount)

    # ── All checks passed: writes ──────────────────────────────────────────

    total_amount = split_total(splits)
    platform_fee = compute_platform_fee(total_amount, fee_percentage)
    leader_credit = total_amount - platform_fee
    reward_coins = compute_leader_reward(total_amount, reward_percentage)

    debits: dict[int, Decimal] = {}
    for split in payers:
        if split.final_amount <= 0:
            continue
        uow.atomic_adjust(split.user_id, -split.final_amount)
        uow.append_ledger_entry(
            entry_type=EntryType.DEBIT,
            user_id=split.user_id,
            amount=split.final_amount,
            description=f"Payment for group order {order_id} in group {group_id}",
            group_id=group_id,
            order_id=order_id,
            counterparty_user_id=leader_id,
        )
        debits[split.user_id] = split.final_amount

    if leader_credit > 0 or reward_coins:
        uow.atomic_adjust(leader_id, leader_credit, reward_coins=reward_coins)
    if leader_credit > 0:
        uow.append_ledger_entry(
            entry_type=EntryType.CREDIT,
            user_id=leader_id,
            amount=leader_credit,
            description=f"Received payment for group order {order_id} in group {group_id}",
            group_id=group_id,
            order_id=order_id,
            platform_fee=platform_fee,
        )

    now = datetime.now(timezone.utc)
    uow.update_order(
        order,
        status=OrderStatus.COMPLETED,
        completed_at=now,
        platform_fee=platform_fee,
        total_amount=total_amount,
    )

    if archive_group:
        uow.update_group(group, status=GroupStatus.COMPLETED, completed_at=now)
    else:
        uow.delete_group(group)

    # Surface constraint violations inside the attempt, not at commit.
    uow.flush()

    return SettlementResult(
        group_id=group_id,
        order_id=order_id,
        leader_id=leader_id,
        total_amount=total_amount,
        platform_fee=platform_fee,
        leader_credit=leader_credit,
        reward_coins=reward_coins,
        debits=debits,
        group_archived=archive_group,
        split_user_ids=tuple(s.user_id for s in splits),
    )


def splits_from_items(items) -> list[OrderSplit]:
    """OrderSplit values for persisted order items, approvals included."""
    return [
        OrderSplit(
            user_id=item.user_id,
            original_amount=item.item_mrp,
            tax_share=item.tax_share,
            discount_share=item.discount_share,
            final_amount=item.final_amount,
            approved=item.approved,
        )
        for item in items
    ]


def settle_persisted_order_once(
        uow: LedgerUnitOfWork,
        *,
        order_id: int,
        leader_id: int,
        **options,
) -> SettlementResult:
    """
    One settlement attempt over the splits stored on the order's items.

    The items are read under the attempt's row locks, so splits reassigned
    or approvals reset by another request before this attempt are the ones
    checked and charged. `options` are passed on to settle_order_once().
    """
    order = require_open_order(uow.get_order(order_id), order_id)
    splits = splits_from_items(uow.get_order_items(order_id))
    return settle_order_once(
        uow,
        group_id=order.group_id,
        order_id=order_id,
        leader_id=leader_id,
        splits=splits,
        **options,
    )
