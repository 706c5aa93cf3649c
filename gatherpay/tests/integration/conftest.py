"""
tests/integration/conftest.py: Fixtures and helpers for all integration tests.

Design:
  - The app is created once per session with create_app("testing"), which
    points at in-memory SQLite unless TEST_DATABASE_URL names a PostgreSQL
    database.
  - All tables are created once via db.create_all() at session start.
  - Between tests, all rows are deleted in FK-safe order and the recording
    notifier is cleared, so tests are isolated.

Users, wallets and groups belong to external services with no routes here,
so the helpers seed them through the ORM (and the unit of work for money).
Helper functions (not fixtures), each opening its own app context:
  - make_user(app, ...)        → user id (wallet funded through the ledger)
  - fund(app, user_id, amount) → credit + ledger entry
  - make_group(app, ...)       → group id
  - make_order(app, ...)       → order id
  - price_order(app, ...)      → splits assigned (and optionally approved)
  - balance_of / coins_of      → current wallet values
  - auth_headers(user_id)      → {"Authorization": "Bearer <token>"}
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import jwt
import pytest
from sqlalchemy import select, text

from gatherpay.app import create_app
from gatherpay.app.extensions import db as _db
from gatherpay.app.models.group import Group, GroupMember, GroupStatus
from gatherpay.app.models.ledger_entry import EntryType, LedgerEntry
from gatherpay.app.models.order import Order, OrderItem, OrderStatus
from gatherpay.app.models.user import User
from gatherpay.app.models.wallet import Wallet
from gatherpay.app.services import order_service
from gatherpay.app.services.notifications import Notifier
from gatherpay.app.services.unit_of_work import LedgerUnitOfWork
from gatherpay.config import TestingConfig


class RecordingNotifier(Notifier):
    """Keeps published events in memory so tests can assert on them."""

    def __init__(self) -> None:
        self.events = []

    def publish(self, event) -> None:
        self.events.append(event)


# ═══════════════════════════════════════════════════════════════════════════
# Session-scoped app fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="session")
def app():
    flask_app = create_app("testing", notifier=RecordingNotifier())

    with flask_app.app_context():
        _db.create_all()

    yield flask_app

    with flask_app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def clean_tables(app):
    """Deletes all rows after every test, children before parents."""
    yield

    with app.app_context():
        _db.session.rollback()

        with _db.engine.connect() as conn:
            conn.execute(text("DELETE FROM order_items"))
            conn.execute(text("DELETE FROM orders"))
            conn.execute(text("DELETE FROM group_members"))
            conn.execute(text("DELETE FROM groups"))
            conn.execute(text("DELETE FROM ledger_entries"))
            conn.execute(text("DELETE FROM wallets"))
            conn.execute(text("DELETE FROM users"))
            conn.commit()

    app.extensions["settlement_engine"].notifier.events.clear()


@pytest.fixture
def client(app):
    """Flask test client. Each test gets a fresh client (function-scoped)."""
    return app.test_client()


@pytest.fixture
def engine(app):
    return app.extensions["settlement_engine"]


@pytest.fixture
def events(app):
    return app.extensions["settlement_engine"].notifier.events


# ═══════════════════════════════════════════════════════════════════════════
# Shared helper functions (not fixtures)
# ═══════════════════════════════════════════════════════════════════════════

def fund(app, user_id: int, amount) -> None:
    """Credits a wallet with a matching ledger entry, bypassing wallet limits."""
    amount = Decimal(str(amount))
    with app.app_context():
        with LedgerUnitOfWork(_db.session) as uow:
            uow.atomic_adjust(user_id, amount)
            uow.append_ledger_entry(
                entry_type=EntryType.CREDIT,
                user_id=user_id,
                amount=amount,
                description="Test funding",
            )


def make_user(app, name: str = "member", balance="0", with_wallet: bool = True) -> int:
    with app.app_context():
        user = User(display_name=name)
        _db.session.add(user)
        _db.session.flush()
        if with_wallet:
            _db.session.add(Wallet(user_id=user.id, balance=Decimal("0.00"), reward_coins=0))
        _db.session.commit()
        user_id = user.id

    if with_wallet and Decimal(str(balance)) > 0:
        fund(app, user_id, balance)
    return user_id


def make_group(
        app,
        leader_id: int,
        member_ids=(),
        status: GroupStatus = GroupStatus.ORDERED,
        name: str = "Weekend groceries",
) -> int:
    """Creates a group led by `leader_id`; the leader is always a member."""
    with app.app_context():
        group = Group(name=name, created_by=leader_id, status=status)
        group.members.append(GroupMember(user_id=leader_id, active=True))
        for user_id in member_ids:
            if user_id != leader_id:
                group.members.append(GroupMember(user_id=user_id, active=True))
        group.refresh_member_count()
        _db.session.add(group)
        _db.session.commit()
        return group.id


def make_order(
        app,
        group_id: int,
        leader_id: int,
        items: dict,
        status: OrderStatus = OrderStatus.PENDING,
) -> int:
    """`items` maps user_id → item MRP."""
    with app.app_context():
        order = Order(group_id=group_id, leader_id=leader_id, status=status)
        for user_id, mrp in items.items():
            order.items.append(OrderItem(
                user_id=user_id,
                description=f"Item for user {user_id}",
                item_mrp=Decimal(str(mrp)),
            ))
        _db.session.add(order)
        _db.session.commit()
        return order.id


def price_order(app, order_id: int, tax="0", discount="0", approve=True) -> None:
    """
    Assigns splits as the leader would. `approve` is True (everyone), False
    (nobody) or a collection of user ids that approve.
    """
    with app.app_context():
        order = _db.session.get(Order, order_id)
        order_service.assign_splits(
            order_id,
            order.leader_id,
            Decimal(str(tax)),
            Decimal(str(discount)),
            session=_db.session,
        )
        for item in order.items:
            if approve is True or (approve and item.user_id in approve):
                order_service.approve_split(order_id, item.user_id, session=_db.session)
        _db.session.commit()


def set_order_status(app, order_id: int, status: OrderStatus, delivered_at=None) -> None:
    with app.app_context():
        order = _db.session.get(Order, order_id)
        order.status = status
        if delivered_at is not None:
            order.delivered_at = delivered_at
        _db.session.commit()


def balance_of(app, user_id: int) -> Decimal:
    with app.app_context():
        return _db.session.get(Wallet, user_id).balance


def coins_of(app, user_id: int) -> int:
    with app.app_context():
        return _db.session.get(Wallet, user_id).reward_coins


def entries_for(app, user_id: int) -> list[tuple]:
    """(type, amount, order_id) for every ledger entry of a user, oldest first."""
    with app.app_context():
        rows = _db.session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.id)
        ).scalars().all()
        return [(e.type, e.amount, e.order_id) for e in rows]


def order_snapshot(app, order_id: int) -> dict:
    with app.app_context():
        order = _db.session.get(Order, order_id)
        return {
            "status": order.status,
            "platform_fee": order.platform_fee,
            "total_amount": order.total_amount,
            "completed_at": order.completed_at,
            "items": {
                item.user_id: {
                    "final_amount": item.final_amount,
                    "approved": item.approved,
                    "received": item.received,
                    "no_show": item.no_show,
                    "no_show_penalty": item.no_show_penalty,
                }
                for item in order.items
            },
        }


def group_exists(app, group_id: int) -> bool:
    with app.app_context():
        return _db.session.get(Group, group_id) is not None


def token_for(user_id: int, expires_in: timedelta = timedelta(minutes=15)) -> str:
    now = datetime.now(timezone.utc)
    return jwt.encode(
        {"sub": str(user_id), "iat": now, "exp": now + expires_in},
        TestingConfig.JWT_SECRET_KEY,
        algorithm="HS256",
    )


def auth_headers(user_id: int) -> dict:
    """Returns the Authorization header dict for use in test requests."""
    return {"Authorization": f"Bearer {token_for(user_id)}"}


def scenario(app, balances=("1000", "1000", "1000")) -> dict:
    """
    Leader + two members buying items of 100 / 200 / 300, tax 30, discount 15,
    everyone approved. Finals: 102.50 / 205.00 / 307.50, total 615.00.
    """
    leader = make_user(app, "leader", balances[0])
    bob = make_user(app, "bob", balances[1])
    cara = make_user(app, "cara", balances[2])
    group_id = make_group(app, leader, [bob, cara])
    order_id = make_order(app, group_id, leader, {leader: 100, bob: 200, cara: 300})
    price_order(app, order_id, tax="30", discount="15")
    return {
        "leader": leader,
        "bob": bob,
        "cara": cara,
        "group_id": group_id,
        "order_id": order_id,
    }


def settlement_splits(app, order_id: int):
    with app.app_context():
        order = _db.session.get(Order, order_id)
        return order_service.build_settlement_splits(order)
