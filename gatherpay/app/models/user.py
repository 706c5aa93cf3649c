"""
models/user.py: User table definition.

The user row is owned by the external user/auth service; the settlement
engine only needs identity and a wallet. No business logic here.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gatherpay.app.extensions import db


class User(db.Model):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)

    display_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    # E.164, verified by the auth service (OTP). Unique per account.
    phone_number: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        unique=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    wallet: Mapped["Wallet | None"] = relationship(  # noqa: F821
        "Wallet",
        back_populates="user",
        uselist=False,
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<User id={self.id} display_name={self.display_name!r}>"
