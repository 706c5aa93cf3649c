"""
services/unit_of_work.py: the Ledger Store and Group/Order Store seen as one
atomic unit.

Every money movement runs inside a LedgerUnitOfWork:

    with LedgerUnitOfWork(session) as uow:
        order = uow.get_order(order_id)          # read-checks
        ...
        uow.atomic_adjust(user_id, Decimal("-10.00"))   # writes
        uow.append_ledger_entry(...)
    # → committed together, or rolled back together

Reads lock the rows they return (SELECT … FOR UPDATE) on dialects that
support it, so two settlements touching the same wallet or order serialize
instead of interleaving. Wallet writes are always deltas
(balance = balance + :delta); this module never writes an absolute balance.

Failure translation on exit:
  - serialization failure / deadlock / lock timeout / "database is locked"
    and optimistic-lock mismatches (StaleDataError) → TransactionConflict,
    which the retry policy may retry;
  - everything else (AppError included) propagates unchanged after rollback.
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.orm.util import identity_key

from gatherpay.app.errors import AppError, ErrorCode, TransactionConflict
from gatherpay.app.models.group import Group
from gatherpay.app.models.ledger_entry import EntryStatus, EntryType, LedgerEntry
from gatherpay.app.models.order import Order, OrderItem
from gatherpay.app.models.user import User
from gatherpay.app.models.wallet import Wallet


# PostgreSQL SQLSTATEs: serialization_failure, deadlock_detected, lock_not_available.
_TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03"})


def is_transient_db_error(error: BaseException) -> bool:
    if isinstance(error, StaleDataError):
        return True
    if not isinstance(error, DBAPIError):
        return False
    orig = error.orig
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _TRANSIENT_SQLSTATES:
        return True
    return "database is locked" in str(orig).lower()


class LedgerUnitOfWork:

    def __init__(self, session: Session) -> None:
        self.session = session
        self._active = False

    # ── Transaction boundary ───────────────────────────────────────────────

    def __enter__(self) -> "LedgerUnitOfWork":
        if self._active:
            raise RuntimeError("LedgerUnitOfWork is not re-entrant.")
        self._active = True
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._active = False

        if exc_type is None:
            try:
                self.session.commit()
            except (StaleDataError, DBAPIError) as error:
                self.session.rollback()
                if is_transient_db_error(error):
                    raise TransactionConflict(str(error)) from error
                raise
            return False

        self.session.rollback()
        if is_transient_db_error(exc):
            raise TransactionConflict(str(exc)) from exc
        return False

    # ── Reads ──────────────────────────────────────────────────────────────

    def _locked(self, stmt):
        # populate_existing: the locked row must overwrite any stale identity-map copy.
        return stmt.with_for_update().execution_options(populate_existing=True)

    def get_order(self, order_id: int) -> Order | None:
        stmt = self._locked(select(Order).where(Order.id == order_id))
        return self.session.execute(stmt).scalar_one_or_none()

    def get_order_items(self, order_id: int) -> list[OrderItem]:
        stmt = self._locked(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def get_group(self, group_id: int) -> Group | None:
        stmt = self._locked(select(Group).where(Group.id == group_id))
        return self.session.execute(stmt).scalar_one_or_none()

    def get_user(self, user_id: int) -> User | None:
        return self.session.get(User, user_id)

    def get_wallet(self, user_id: int) -> Wallet | None:
        stmt = self._locked(select(Wallet).where(Wallet.user_id == user_id))
        return self.session.execute(stmt).scalar_one_or_none()

    def require_wallets(self, user_ids) -> dict[int, Wallet]:
        """
        Loads and locks the wallet of every user in `user_ids`.

        Locks are taken in ascending user_id order so concurrent settlements
        that share wallets (a leader in two groups) cannot deadlock.

        Raises:
            AppError(USER_NOT_FOUND, 404)   the user row does not exist
            AppError(WALLET_NOT_FOUND, 404) the user exists without a wallet
        """
        wallets: dict[int, Wallet] = {}
        for user_id in sorted(set(user_ids)):
            wallet = self.get_wallet(user_id)
            if wallet is None:
                if self.get_user(user_id) is None:
                    raise AppError(
                        ErrorCode.USER_NOT_FOUND,
                        f"User {user_id} does not exist.",
                        404,
                        details={"user_id": user_id},
                    )
                raise AppError(
                    ErrorCode.WALLET_NOT_FOUND,
                    f"Wallet not found for user {user_id}.",
                    404,
                    details={"user_id": user_id},
                )
            wallets[user_id] = wallet
        return wallets

    # ── Writes ─────────────────────────────────────────────────────────────

    def atomic_adjust(self, user_id: int, delta: Decimal, reward_coins: int = 0) -> None:
        """Applies a balance (and optional reward coin) delta in one UPDATE."""
        values = {"balance": Wallet.balance + delta}
        if reward_coins:
            values["reward_coins"] = Wallet.reward_coins + reward_coins

        result = self.session.execute(
            update(Wallet)
            .where(Wallet.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AppError(
                ErrorCode.WALLET_NOT_FOUND,
                f"Wallet not found for user {user_id}.",
                404,
                details={"user_id": user_id},
            )

        # The UPDATE bypassed the identity map; drop any cached copy.
        cached = self.session.identity_map.get(identity_key(Wallet, user_id))
        if cached is not None:
            self.session.expire(cached)

    def append_ledger_entry(
            self,
            *,
            entry_type: EntryType,
            user_id: int,
            amount: Decimal,
            description: str,
            status: EntryStatus = EntryStatus.COMPLETED,
            group_id: int | None = None,
            order_id: int | None = None,
            counterparty_user_id: int | None = None,
            platform_fee: Decimal | None = None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            type=entry_type,
            user_id=user_id,
            amount=amount,
            description=description,
            status=status,
            group_id=group_id,
            order_id=order_id,
            counterparty_user_id=counterparty_user_id,
            platform_fee=platform_fee,
        )
        self.session.add(entry)
        return entry

    def update_order(self, order: Order, **patch) -> Order:
        for key, value in patch.items():
            setattr(order, key, value)
        return order

    def update_group(self, group: Group, **patch) -> Group:
        for key, value in patch.items():
            setattr(group, key, value)
        return group

    def delete_group(self, group: Group) -> None:
        self.session.delete(group)

    def flush(self) -> None:
        self.session.flush()
