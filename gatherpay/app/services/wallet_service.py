"""
services/wallet_service.py: member-facing wallet operations.

Deposits, withdrawals and transfers move money, so they run inside a
LedgerUnitOfWork exactly like settlement: delta UPDATEs plus ledger entries,
committed together. A withdrawal the wallet cannot cover is still recorded,
as a failed debit carrying the reason. Everything else here is read-only.

Limits (WalletLimits, from config):
  - every deposit/withdrawal/transfer amount in [MIN, MAX] INVALID_AMOUNT (422)
  - today's credit + debit + transfer_out total, plus the
    new amount, at most MAX_DAILY_TRANSACTION_LIMIT          DAILY_LIMIT_EXCEEDED (422)

The payment gateway is outside this service: deposit() is called once the
gateway has captured the funds.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from gatherpay.app.errors import AppError, ErrorCode
from gatherpay.app.models.ledger_entry import (
    INBOUND_TYPES,
    OUTBOUND_TYPES,
    EntryStatus,
    EntryType,
    LedgerEntry,
)
from gatherpay.app.models.user import User
from gatherpay.app.models.wallet import Wallet
from gatherpay.app.services.retry import RetryPolicy
from gatherpay.app.services.settlement_service import require_sufficient_balance
from gatherpay.app.services.split_calculator import round2
from gatherpay.app.services.unit_of_work import LedgerUnitOfWork

ZERO = Decimal("0.00")

# Entry types that count toward the daily limit.
_DAILY_LIMIT_TYPES = (EntryType.CREDIT, EntryType.DEBIT, EntryType.TRANSFER_OUT)

CSV_HEADERS = ("Date", "Type", "Amount", "Description", "Status", "Reference ID")


@dataclass(frozen=True)
class WalletLimits:
    min_amount: Decimal = Decimal("1")
    max_amount: Decimal = Decimal("10000")
    daily_limit: Decimal = Decimal("50000")
    recent_limit: int = 50

    @classmethod
    def from_config(cls, config) -> "WalletLimits":
        return cls(
            min_amount=Decimal(config["MIN_TRANSACTION_AMOUNT"]),
            max_amount=Decimal(config["MAX_TRANSACTION_AMOUNT"]),
            daily_limit=Decimal(config["MAX_DAILY_TRANSACTION_LIMIT"]),
            recent_limit=int(config["RECENT_TRANSACTIONS_LIMIT"]),
        )


@dataclass
class WalletSummary:
    user_id: int
    balance: Decimal
    reward_coins: int
    recent_entries: list[LedgerEntry] = field(default_factory=list)


# ── Private helpers ────────────────────────────────────────────────────────

def _get_wallet_or_404(user_id: int, session: Session) -> Wallet:
    wallet = session.get(Wallet, user_id)
    if wallet is None:
        raise AppError(
            ErrorCode.WALLET_NOT_FOUND,
            f"Wallet not found for user {user_id}.",
            404,
            details={"user_id": user_id},
        )
    return wallet


def _validate_amount(amount: Decimal, limits: WalletLimits) -> None:
    if amount < limits.min_amount:
        raise AppError(
            ErrorCode.INVALID_AMOUNT,
            f"Minimum transaction amount is {limits.min_amount}.",
            422,
            field="amount",
        )
    if amount > limits.max_amount:
        raise AppError(
            ErrorCode.INVALID_AMOUNT,
            f"Maximum transaction amount is {limits.max_amount}.",
            422,
            field="amount",
        )


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def daily_total(user_id: int, session: Session, now: datetime | None = None) -> Decimal:
    """Today's (UTC) non-failed credit, debit and transfer_out total for a user."""
    since = _start_of_day(now or datetime.now(timezone.utc))
    total = session.execute(
        select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
            LedgerEntry.user_id == user_id,
            LedgerEntry.type.in_(_DAILY_LIMIT_TYPES),
            LedgerEntry.status != EntryStatus.FAILED,
            LedgerEntry.created_at >= since,
        )
    ).scalar_one()
    return round2(Decimal(str(total)))


def _check_daily_limit(user_id: int, amount: Decimal, limits: WalletLimits, session: Session) -> None:
    spent = daily_total(user_id, session)
    if spent + amount > limits.daily_limit:
        raise AppError(
            ErrorCode.DAILY_LIMIT_EXCEEDED,
            f"Daily transaction limit of {limits.daily_limit} exceeded.",
            422,
            field="amount",
            details={
                "user_id": user_id,
                "limit": str(limits.daily_limit),
                "used_today": str(spent),
            },
        )


def _single_attempt() -> RetryPolicy:
    return RetryPolicy(max_attempts=1, base_delay=0)


# ── Public service functions ───────────────────────────────────────────────

def open_wallet(user_id: int, session: Session) -> Wallet:
    """
    Creates the user's empty wallet if it does not exist yet. Called by the
    user service when an account is provisioned.
    """
    if session.get(User, user_id) is None:
        raise AppError(
            ErrorCode.USER_NOT_FOUND,
            f"User {user_id} does not exist.",
            404,
            details={"user_id": user_id},
        )
    wallet = session.get(Wallet, user_id)
    if wallet is None:
        wallet = Wallet(user_id=user_id, balance=ZERO, reward_coins=0)
        session.add(wallet)
        session.flush()
    return wallet


def get_wallet_summary(user_id: int, session: Session, recent_limit: int = 50) -> WalletSummary:
    wallet = _get_wallet_or_404(user_id, session)
    entries = session.execute(
        select(LedgerEntry)
        .where(LedgerEntry.user_id == user_id)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .limit(recent_limit)
    ).scalars().all()
    return WalletSummary(
        user_id=user_id,
        balance=wallet.balance,
        reward_coins=wallet.reward_coins,
        recent_entries=list(entries),
    )


def list_entries(user_id: int, session: Session) -> list[LedgerEntry]:
    """Every ledger entry of a user, newest first."""
    _get_wallet_or_404(user_id, session)
    return list(session.execute(
        select(LedgerEntry)
        .where(LedgerEntry.user_id == user_id)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
    ).scalars().all())


def _deposit_once(uow: LedgerUnitOfWork, *, user_id: int, amount: Decimal, description: str,
                  limits: WalletLimits) -> LedgerEntry:
    uow.require_wallets([user_id])
    _check_daily_limit(user_id, amount, limits, uow.session)

    entry = uow.append_ledger_entry(
        entry_type=EntryType.CREDIT,
        user_id=user_id,
        amount=amount,
        description=description,
        status=EntryStatus.PENDING,
    )
    uow.flush()
    uow.atomic_adjust(user_id, amount)
    entry.status = EntryStatus.COMPLETED
    uow.flush()
    return entry


def deposit(
        user_id: int,
        amount: Decimal,
        session: Session,
        limits: WalletLimits | None = None,
        description: str = "Added money to wallet",
        retry_policy: RetryPolicy | None = None,
) -> LedgerEntry:
    """
    Credits funds the payment gateway has already captured. The entry is
    written as pending and completed in the same unit as the balance delta.
    """
    limits = limits or WalletLimits()
    _validate_amount(amount, limits)
    policy = retry_policy or _single_attempt()

    def attempt() -> LedgerEntry:
        with LedgerUnitOfWork(session) as uow:
            return _deposit_once(
                uow, user_id=user_id, amount=amount, description=description, limits=limits,
            )

    return policy.run(attempt)


def _withdraw_once(uow: LedgerUnitOfWork, *, user_id: int, amount: Decimal, description: str,
                   limits: WalletLimits) -> tuple[LedgerEntry, AppError | None]:
    wallets = uow.require_wallets([user_id])
    _check_daily_limit(user_id, amount, limits, uow.session)

    entry = uow.append_ledger_entry(
        entry_type=EntryType.DEBIT,
        user_id=user_id,
        amount=amount,
        description=description,
        status=EntryStatus.PENDING,
    )
    uow.flush()

    try:
        require_sufficient_balance(wallets[user_id], user_id, amount)
    except AppError as error:
        # Committed with the unit; the caller raises once it is stored.
        entry.status = EntryStatus.FAILED
        entry.failure_reason = error.message
        uow.flush()
        return entry, error

    uow.atomic_adjust(user_id, -amount)
    entry.status = EntryStatus.COMPLETED
    uow.flush()
    return entry, None


def withdraw(
        user_id: int,
        amount: Decimal,
        session: Session,
        limits: WalletLimits | None = None,
        description: str = "Deducted from wallet",
        retry_policy: RetryPolicy | None = None,
) -> LedgerEntry:
    """
    Debits funds leaving the platform (payout to the member's bank).

    The debit is written as pending and settled against the locked wallet.
    When the balance cannot cover it, the entry is kept as failed with the
    reason and INSUFFICIENT_BALANCE is raised, naming the entry in details.
    """
    limits = limits or WalletLimits()
    _validate_amount(amount, limits)
    policy = retry_policy or _single_attempt()

    def attempt() -> tuple[LedgerEntry, AppError | None]:
        with LedgerUnitOfWork(session) as uow:
            return _withdraw_once(
                uow, user_id=user_id, amount=amount, description=description, limits=limits,
            )

    entry, error = policy.run(attempt)
    if error is not None:
        error.details = {**(error.details or {}), "entry_id": entry.id}
        raise error
    return entry


def _transfer_once(uow: LedgerUnitOfWork, *, from_user_id: int, to_user_id: int, amount: Decimal,
                   description: str, limits: WalletLimits) -> tuple[LedgerEntry, LedgerEntry]:
    wallets = uow.require_wallets([from_user_id, to_user_id])
    _check_daily_limit(from_user_id, amount, limits, uow.session)
    require_sufficient_balance(wallets[from_user_id], from_user_id, amount)

    uow.atomic_adjust(from_user_id, -amount)
    uow.atomic_adjust(to_user_id, amount)
    sent = uow.append_ledger_entry(
        entry_type=EntryType.TRANSFER_OUT,
        user_id=from_user_id,
        amount=amount,
        description=description,
        counterparty_user_id=to_user_id,
    )
    received = uow.append_ledger_entry(
        entry_type=EntryType.TRANSFER_IN,
        user_id=to_user_id,
        amount=amount,
        description=description,
        counterparty_user_id=from_user_id,
    )
    uow.flush()
    return sent, received


def transfer(
        from_user_id: int,
        to_user_id: int,
        amount: Decimal,
        session: Session,
        limits: WalletLimits | None = None,
        description: str = "Wallet transfer",
        retry_policy: RetryPolicy | None = None,
) -> tuple[LedgerEntry, LedgerEntry]:
    """Moves funds between two wallets. Returns (transfer_out, transfer_in)."""
    if from_user_id == to_user_id:
        raise AppError(
            ErrorCode.SELF_TRANSFER,
            "Cannot transfer money to yourself.",
            422,
            field="to_user_id",
        )
    limits = limits or WalletLimits()
    _validate_amount(amount, limits)
    policy = retry_policy or _single_attempt()

    def attempt() -> tuple[LedgerEntry, LedgerEntry]:
        with LedgerUnitOfWork(session) as uow:
            return _transfer_once(
                uow,
                from_user_id=from_user_id,
                to_user_id=to_user_id,
                amount=amount,
                description=description,
                limits=limits,
            )

    return policy.run(attempt)


def summarize_transactions(entries) -> dict:
    """
    Totals of completed entries by kind, success/failure counts and the
    date range covered. Pending entries count toward neither total.
    """
    summary = {
        "total_credits": ZERO,
        "total_debits": ZERO,
        "total_transfers": ZERO,
        "successful_transactions": 0,
        "failed_transactions": 0,
        "start_date": None,
        "end_date": None,
    }

    for entry in entries:
        created = entry.created_at
        if created is not None:
            if summary["start_date"] is None or created < summary["start_date"]:
                summary["start_date"] = created
            if summary["end_date"] is None or created > summary["end_date"]:
                summary["end_date"] = created

        if entry.status == EntryStatus.COMPLETED:
            summary["successful_transactions"] += 1
            if entry.type == EntryType.CREDIT:
                summary["total_credits"] += entry.amount
            elif entry.type == EntryType.DEBIT:
                summary["total_debits"] += entry.amount
            else:
                summary["total_transfers"] += entry.amount
        elif entry.status == EntryStatus.FAILED:
            summary["failed_transactions"] += 1

    return summary


def export_transactions_csv(entries) -> str:
    """Renders entries as CSV. Commas in descriptions become semicolons."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for entry in entries:
        writer.writerow([
            entry.created_at.isoformat() if entry.created_at else "",
            entry.type.value,
            str(entry.amount),
            (entry.description or "").replace(",", ";"),
            entry.status.value,
            entry.id,
        ])
    return buffer.getvalue()


def reconcile_wallet(user_id: int, session: Session) -> dict:
    """
    Compares the wallet balance with the balance implied by the ledger:
    Σ completed credit/transfer_in − Σ completed debit/transfer_out.
    """
    wallet = _get_wallet_or_404(user_id, session)

    rows = session.execute(
        select(LedgerEntry.type, func.coalesce(func.sum(LedgerEntry.amount), 0))
        .where(
            LedgerEntry.user_id == user_id,
            LedgerEntry.status == EntryStatus.COMPLETED,
        )
        .group_by(LedgerEntry.type)
    ).all()

    ledger_balance = ZERO
    for entry_type, total in rows:
        amount = round2(Decimal(str(total)))
        if entry_type in INBOUND_TYPES:
            ledger_balance += amount
        elif entry_type in OUTBOUND_TYPES:
            ledger_balance -= amount

    difference = wallet.balance - ledger_balance
    return {
        "user_id": user_id,
        "balance": wallet.balance,
        "ledger_balance": ledger_balance,
        "difference": difference,
        "consistent": difference == 0,
    }
