"""
models/group.py: Group and GroupMember table definitions.

A group is a short-lived buying circle led by its creator. Membership is a
user_id → active flag mapping (GroupMember rows). No business logic here
beyond keeping the denormalised member_count in step with the active rows.

Invariants:
  - member_count == number of active GroupMember rows
    (maintained by Group.refresh_member_count()).
  - The leader (created_by) is always a member.
  - The group row is deleted (or archived with status=completed) only after
    its order has settled.
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


class GroupStatus(str, enum.Enum):
    OPEN      = "open"
    ORDERING  = "ordering"
    ORDERED   = "ordered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class Group(db.Model):
    __tablename__ = "groups"

    __table_args__ = (
        CheckConstraint("member_count >= 0", name="ck_groups_member_count_non_negative"),
        CheckConstraint("target_amount >= 0", name="ck_groups_target_amount_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    # The group leader. ON DELETE RESTRICT: a leader cannot be deleted
    # while leading a group.
    created_by: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    status: Mapped[GroupStatus] = mapped_column(
        Enum(
            GroupStatus,
            name="group_status_enum",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=GroupStatus.OPEN,
    )

    target_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
    )

    member_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Set when an archived group is closed by settlement.
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # ── Relationships ──────────────────────────────────────────────────────

    # Membership rows are owned by the group: deleting the group removes them.
    members: Mapped[list["GroupMember"]] = relationship(
        "GroupMember",
        back_populates="group",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    # ── Convenience ────────────────────────────────────────────────────────

    @property
    def active_member_ids(self) -> set[int]:
        return {m.user_id for m in self.members if m.active}

    def refresh_member_count(self) -> None:
        self.member_count = len(self.active_member_ids)

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<Group id={self.id} name={self.name!r} "
            f"status={self.status.value if self.status else None} "
            f"members={self.member_count}>"
        )


class GroupMember(db.Model):
    __tablename__ = "group_members"

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_members_group_user"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    group_id: Mapped[int] = mapped_column(
        ForeignKey("groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # False once the member has left; the row is kept for the order history.
    active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    group: Mapped["Group"] = relationship(
        "Group",
        back_populates="members",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<GroupMember group_id={self.group_id} "
            f"user_id={self.user_id} active={self.active}>"
        )
