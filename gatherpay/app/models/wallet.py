"""
models/wallet.py: Wallet table definition.

One wallet per user. The balance is mutated ONLY through
LedgerUnitOfWork.atomic_adjust(), which issues a delta UPDATE
(balance = balance + :delta) inside a coordinator-owned transaction.
Nothing may read a balance and later write back an absolute value.

Key design points:
  - `balance` uses Numeric(12, 2), never Float.
  - CHECK(balance >= 0) and CHECK(reward_coins >= 0) are the last line of
    defence; services pre-check and raise INSUFFICIENT_BALANCE first.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, Numeric, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gatherpay.app.extensions import db


class Wallet(db.Model):
    __tablename__ = "wallets"

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
        CheckConstraint("reward_coins >= 0", name="ck_wallets_reward_coins_non_negative"),
    )

    # One wallet per user: the user id is the primary key.
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        primary_key=True,
    )

    balance: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
        server_default="0",
    )

    reward_coins: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    user: Mapped["User"] = relationship(  # noqa: F821
        "User",
        back_populates="wallet",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<Wallet user_id={self.user_id} "
            f"balance={self.balance} "
            f"reward_coins={self.reward_coins}>"
        )
