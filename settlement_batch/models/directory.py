"""
Read models for the data the settlement engine consumes but does not own.

Contract:
    CoachProfileModel carries the sponsor hierarchy (``sponsor_id``) and each
    coach's CURRENT rank.  ConfirmedPaymentModel holds confirmed client
    payments.  Settlement only reads these tables.

Architecture: settlement_batch/models. Imports from settlement_kernel.db.base only.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from settlement_kernel.db.base import Base


class CoachProfileModel(Base):
    """A coach, their sponsor, current rank and payout destination."""

    __tablename__ = "coach_profiles"

    __table_args__ = (
        Index("ix_coach_profiles_sponsor", "sponsor_id"),
    )

    coach_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    sponsor_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    rank: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    fund_account_id: Mapped[str | None] = mapped_column(String(100), nullable=True)


class ConfirmedPaymentModel(Base):
    """A client payment credited to a coach."""

    __tablename__ = "confirmed_payments"

    __table_args__ = (
        Index("ix_confirmed_payments_coach_time", "coach_id", "confirmed_at"),
    )

    coach_id: Mapped[str] = mapped_column(String(100), nullable=False)
    amount_minor: Mapped[int] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="confirmed", nullable=False)
    confirmed_at: Mapped[datetime]
    external_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
