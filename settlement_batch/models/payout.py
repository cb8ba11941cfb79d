"""
ORM models for payout items and their audit trail.

Contract:
    PayoutItemModel is the durable state of one PayoutBatchItem, keyed by
    its UNIQUE ``idempotency_key``.  ``amount`` is fixed when the row is
    first written.

    PayoutAuditEntryModel is append-only.  ``(idempotency_key, seq)`` is
    UNIQUE and each row's ``hash`` chains to the previous row of the same
    key through ``prev_hash``.

Architecture: settlement_batch/models. Imports from settlement_kernel.db.base only.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from settlement_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from settlement_kernel.domain.payout import PayoutBatchItem


class PayoutItemModel(TrackedBase):
    """Durable payout state for one (coach, period)."""

    __tablename__ = "payout_items"

    __table_args__ = (
        Index("ix_payout_items_period_state", "period_code", "state"),
        Index("ix_payout_items_state", "state"),
        Index("ix_payout_items_coach", "coach_id"),
    )

    idempotency_key: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True,
    )
    coach_id: Mapped[str] = mapped_column(String(100), nullable=False)
    period_code: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    gateway_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def to_dto(self) -> PayoutBatchItem:
        from settlement_kernel.domain.payout import PayoutBatchItem, PayoutState

        return PayoutBatchItem(
            coach_id=self.coach_id,
            amount=self.amount,
            currency=self.currency,
            idempotency_key=self.idempotency_key,
            state=PayoutState(self.state),
            period_code=self.period_code,
            attempt_count=self.attempt_count,
            gateway_ref=self.gateway_ref,
            last_error_code=self.last_error_code,
            last_error_message=self.last_error_message,
        )

    @classmethod
    def from_dto(
        cls, dto: PayoutBatchItem, created_by_id: UUID, run_id: UUID | None = None,
    ) -> PayoutItemModel:
        if dto.idempotency_key is None or dto.period_code is None:
            raise ValueError(
                f"Payout item for coach {dto.coach_id} has no idempotency key; "
                "dry-run items cannot be persisted"
            )
        return cls(
            idempotency_key=dto.idempotency_key,
            coach_id=dto.coach_id,
            period_code=dto.period_code,
            amount=dto.amount,
            currency=dto.currency,
            state=dto.state.value,
            attempt_count=dto.attempt_count,
            gateway_ref=dto.gateway_ref,
            last_error_code=dto.last_error_code,
            last_error_message=dto.last_error_message,
            run_id=run_id,
            created_by_id=created_by_id,
            updated_by_id=None,
        )


class PayoutAuditEntryModel(TrackedBase):
    """One state transition of one payout item (hash-chained per key)."""

    __tablename__ = "payout_audit_entries"

    __table_args__ = (
        UniqueConstraint("idempotency_key", "seq", name="uq_payout_audit_key_seq"),
        Index("ix_payout_audit_coach", "coach_id"),
    )

    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    coach_id: Mapped[str] = mapped_column(String(100), nullable=False)
    old_state: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_state: Mapped[str] = mapped_column(String(20), nullable=False)
    occurred_at: Mapped[datetime]
    attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    gateway_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)
