"""Initial schema: users, wallets, ledger, groups, orders.

Revision: 001_initial_schema
Created:  2026-10-19

Append-only:
  This file must NEVER be edited after it has been applied to any database.
  If a schema change is required, create a NEW migration file.

Creation order:
  1. Tables in FK dependency order (users → wallets, ledger_entries → groups
     → group_members → orders → order_items)
  2. Indexes

Status columns are VARCHAR(20) holding the enum value (models use
Enum(native_enum=False)), so no PostgreSQL enum types are created. The
allowed values are pinned with CHECK constraints instead.

ON DELETE policies:
  wallets.user_id           → RESTRICT  (a user with a wallet is never hard-deleted)
  ledger_entries.user_id    → RESTRICT
  groups.created_by         → RESTRICT
  group_members.group_id    → CASCADE   (membership rows owned by the group)
  orders.leader_id          → RESTRICT
  order_items.order_id      → CASCADE   (items owned by the order)

ledger_entries.group_id/order_id and orders.group_id are plain integers:
the group row is deleted after settlement while its entries and order stay.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# ── Alembic revision identifiers ──────────────────────────────────────────
revision: str = "001_initial_schema"
down_revision: str | None = None
branch_labels: tuple | None = None
depends_on: tuple | None = None


def _in(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


GROUP_STATUSES = ("open", "ordering", "ordered", "completed", "cancelled")
ORDER_STATUSES = ("pending", "splitting", "delivering", "completed", "cancelled")
ENTRY_TYPES = ("credit", "debit", "transfer_in", "transfer_out")
ENTRY_STATUSES = ("pending", "completed", "failed")


def upgrade() -> None:

    # ── users ──────────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("phone_number", sa.String(20), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
        sa.UniqueConstraint("phone_number", name="uq_users_phone_number"),
    )

    # ── wallets ────────────────────────────────────────────────────────────
    op.create_table(
        "wallets",
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT", name="fk_wallets_user"),
            nullable=False,
        ),
        sa.Column("balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("reward_coins", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("user_id", name="pk_wallets"),
        sa.CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
        sa.CheckConstraint("reward_coins >= 0", name="ck_wallets_reward_coins_non_negative"),
    )

    # ── ledger_entries ─────────────────────────────────────────────────────
    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT", name="fk_ledger_entries_user"),
            nullable=False,
        ),
        sa.Column("counterparty_user_id", sa.Integer(), nullable=True),
        sa.Column("group_id", sa.Integer(), nullable=True),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("failure_reason", sa.String(255), nullable=True),
        sa.Column("description", sa.String(255), nullable=False, server_default=""),
        sa.Column("platform_fee", sa.Numeric(12, 2), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_ledger_entries"),
        sa.CheckConstraint("amount > 0", name="ck_ledger_entries_amount_positive"),
        sa.CheckConstraint(_in("type", ENTRY_TYPES), name="ck_ledger_entries_type"),
        sa.CheckConstraint(_in("status", ENTRY_STATUSES), name="ck_ledger_entries_status"),
    )

    # ── groups ─────────────────────────────────────────────────────────────
    op.create_table(
        "groups",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column(
            "created_by",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT", name="fk_groups_created_by"),
            nullable=False,
        ),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("target_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("member_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_groups"),
        sa.CheckConstraint("member_count >= 0", name="ck_groups_member_count_non_negative"),
        sa.CheckConstraint("target_amount >= 0", name="ck_groups_target_amount_non_negative"),
        sa.CheckConstraint(_in("status", GROUP_STATUSES), name="ck_groups_status"),
    )

    # ── group_members ──────────────────────────────────────────────────────
    op.create_table(
        "group_members",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "group_id",
            sa.Integer(),
            sa.ForeignKey("groups.id", ondelete="CASCADE", name="fk_group_members_group"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT", name="fk_group_members_user"),
            nullable=False,
        ),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        sa.Column(
            "joined_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_group_members"),
        sa.UniqueConstraint("group_id", "user_id", name="uq_group_members_group_user"),
    )

    # ── orders ─────────────────────────────────────────────────────────────
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("group_id", sa.Integer(), nullable=False),
        sa.Column(
            "leader_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT", name="fk_orders_leader"),
            nullable=False,
        ),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("screenshot_url", sa.String(500), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("total_tax", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total_discount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("platform_fee", sa.Numeric(12, 2), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        # Optimistic-lock counter (mapper version_id_col).
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id", name="pk_orders"),
        sa.CheckConstraint("total_amount >= 0", name="ck_orders_total_amount_non_negative"),
        sa.CheckConstraint(_in("status", ORDER_STATUSES), name="ck_orders_status"),
    )

    # ── order_items ────────────────────────────────────────────────────────
    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "order_id",
            sa.Integer(),
            sa.ForeignKey("orders.id", ondelete="CASCADE", name="fk_order_items_order"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT", name="fk_order_items_user"),
            nullable=False,
        ),
        sa.Column("description", sa.String(255), nullable=False, server_default=""),
        sa.Column("item_mrp", sa.Numeric(12, 2), nullable=False),
        sa.Column("tax_share", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("discount_share", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("final_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("approved", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")),
        sa.Column("received", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("no_show", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")),
        sa.Column("no_show_penalty", sa.Numeric(12, 2), nullable=True),
        sa.Column("no_show_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id", name="pk_order_items"),
        sa.UniqueConstraint("order_id", "user_id", name="uq_order_items_order_user"),
        sa.CheckConstraint("item_mrp >= 0", name="ck_order_items_item_mrp_non_negative"),
    )

    # ── Indexes ────────────────────────────────────────────────────────────
    # Names follow SQLAlchemy's ix_<table>_<column> so autogenerate sees no diff.
    op.create_index("ix_ledger_entries_user_id", "ledger_entries", ["user_id"])
    op.create_index("ix_ledger_entries_order_id", "ledger_entries", ["order_id"])
    op.create_index("ix_ledger_entries_created_at", "ledger_entries", ["created_at"])
    op.create_index("ix_group_members_group_id", "group_members", ["group_id"])
    op.create_index("ix_group_members_user_id", "group_members", ["user_id"])
    op.create_index("ix_orders_group_id", "orders", ["group_id"])
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])


def downgrade() -> None:
    """
    Drop all objects created in upgrade(), in reverse dependency order.
    For local development resets only; production uses forward migrations.
    """
    op.drop_index("ix_order_items_order_id",       table_name="order_items")
    op.drop_index("ix_orders_group_id",            table_name="orders")
    op.drop_index("ix_group_members_user_id",      table_name="group_members")
    op.drop_index("ix_group_members_group_id",     table_name="group_members")
    op.drop_index("ix_ledger_entries_created_at",  table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_order_id",    table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_user_id",     table_name="ledger_entries")

    op.drop_table("order_items")
    op.drop_table("orders")
    op.drop_table("group_members")
    op.drop_table("groups")
    op.drop_table("ledger_entries")
    op.drop_table("wallets")
    op.drop_table("users")
