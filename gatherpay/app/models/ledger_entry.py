"""
models/ledger_entry.py: LedgerEntry table definition.

Append-only money log. Every wallet delta applied by the settlement engine
is paired with an entry written in the same transaction.

Key design points:
  - `amount` is Numeric(12, 2) and strictly positive; direction comes from
    `type` (credit / transfer_in add, debit / transfer_out subtract).
  - `group_id` and `order_id` are plain references, not foreign keys. A
    group row is deleted after settlement but its entries must survive.
  - Entries whose status is completed or failed are immutable. The
    before_update listener below rejects any flush that modifies one.
  - Invariant (maintained by the engine, audited by
    wallet_service.reconcile_wallet): for each user,
    Σ completed credits/transfer_in − Σ completed debits/transfer_out
    == wallets.balance.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    event,
    func,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column

from gatherpay.app.errors import LedgerEntryImmutableError
from gatherpay.app.extensions import db


# ── Enum Definitions ───────────────────────────────────────────────────────

class EntryType(str, enum.Enum):
    CREDIT       = "credit"
    DEBIT        = "debit"
    TRANSFER_IN  = "transfer_in"
    TRANSFER_OUT = "transfer_out"


class EntryStatus(str, enum.Enum):
    PENDING   = "pending"
    COMPLETED = "completed"
    FAILED    = "failed"


INBOUND_TYPES = frozenset({EntryType.CREDIT, EntryType.TRANSFER_IN})
OUTBOUND_TYPES = frozenset({EntryType.DEBIT, EntryType.TRANSFER_OUT})
TERMINAL_STATUSES = frozenset({EntryStatus.COMPLETED, EntryStatus.FAILED})


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Ensure SQLAlchemy stores enum values (e.g., 'credit'), not names ('CREDIT')."""
    return [member.value for member in enum_cls]


# ── Model ──────────────────────────────────────────────────────────────────

class LedgerEntry(db.Model):
    __tablename__ = "ledger_entries"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_ledger_entries_amount_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    type: Mapped[EntryType] = mapped_column(
        Enum(
            EntryType,
            name="ledger_entry_type_enum",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # The other side of a transfer (or the leader / penalized member).
    counterparty_user_id: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    group_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    order_id: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        index=True,
    )

    status: Mapped[EntryStatus] = mapped_column(
        Enum(
            EntryStatus,
            name="ledger_entry_status_enum",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=EntryStatus.PENDING,
    )

    failure_reason: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    description: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
    )

    # Set only on the leader's settlement credit.
    platform_fee: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        index=True,
    )

    @property
    def signed_amount(self) -> Decimal:
        """The wallet delta this entry represents (negative for outbound types)."""
        return -self.amount if self.type in OUTBOUND_TYPES else self.amount

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<LedgerEntry id={self.id} "
            f"type={self.type.value if self.type else None} "
            f"user_id={self.user_id} "
            f"amount={self.amount} "
            f"status={self.status.value if self.status else None}>"
        )


@event.listens_for(LedgerEntry, "before_update")
def _reject_terminal_entry_updates(mapper, connection, target: LedgerEntry) -> None:
    status_history = inspect(target).attrs.status.history
    original_status = status_history.deleted[0] if status_history.deleted else target.status
    if original_status in TERMINAL_STATUSES:
        raise LedgerEntryImmutableError(
            f"Ledger entry {target.id} is {original_status.value} and cannot be modified."
        )
