"""
ORM models for settlement runs and their computed figures.

Contract:
    SettlementRunModel records one ``execute_run``.  EarningsRecordModel and
    CommissionLedgerEntryModel hold the figures that run computed; rows are
    written once and never updated.  A later run for the same period writes
    new rows, and readers take the latest run's rows.

Architecture: settlement_batch/models. Imports from settlement_kernel.db.base only.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from settlement_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from settlement_batch.domain.types import RunSummary
    from settlement_engines.commission import CommissionLedgerEntry, EarningsRecord


class SettlementRunModel(TrackedBase):
    """One execution of the settlement pipeline for one period."""

    __tablename__ = "settlement_runs"

    __table_args__ = (
        Index("ix_settlement_runs_period", "period_code", "run_number", unique=True),
        Index("ix_settlement_runs_status", "status"),
    )

    period_code: Mapped[str] = mapped_column(String(20), nullable=False)
    run_number: Mapped[int] = mapped_column(Integer, nullable=False)  # 1, 2, ... per period
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    policy_version: Mapped[str] = mapped_column(String(50), nullable=False)
    policy_checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    policy_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    attempted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    succeeded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    not_attempted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_submitted: Mapped[int] = mapped_column(default=0, nullable=False)
    total_completed: Mapped[int] = mapped_column(default=0, nullable=False)
    started_at: Mapped[datetime]
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_summary(self) -> RunSummary:
        """Counts and totals only; per-failure reasons live on payout items."""
        from settlement_batch.domain.types import RunStatus, RunSummary

        return RunSummary(
            run_id=self.id,
            period_code=self.period_code,
            status=RunStatus(self.status),
            attempted=self.attempted,
            succeeded=self.succeeded,
            failed=self.failed,
            skipped=self.skipped,
            not_attempted=self.not_attempted,
            total_submitted=self.total_submitted,
            total_completed=self.total_completed,
        )


class EarningsRecordModel(TrackedBase):
    """Per-coach figures computed by one settlement run."""

    __tablename__ = "settlement_earnings_records"

    __table_args__ = (
        Index("ix_earnings_run_coach", "run_id", "coach_id", unique=True),
        Index("ix_earnings_period_coach", "period_code", "coach_id"),
    )

    run_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("settlement_runs.id"), nullable=False,
    )
    coach_id: Mapped[str] = mapped_column(String(100), nullable=False)
    period_code: Mapped[str] = mapped_column(String(20), nullable=False)
    gross_revenue: Mapped[int] = mapped_column(nullable=False)
    platform_fee_amount: Mapped[int] = mapped_column(nullable=False)
    tax_amount: Mapped[int] = mapped_column(nullable=False)
    commissions_total: Mapped[int] = mapped_column(nullable=False)
    net_payable: Mapped[int] = mapped_column(nullable=False)
    anomaly_code: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def to_dto(self) -> EarningsRecord:
        from settlement_engines.commission import EarningsRecord

        return EarningsRecord(
            earnings_id=self.id,
            coach_id=self.coach_id,
            period_code=self.period_code,
            gross_revenue=self.gross_revenue,
            platform_fee_amount=self.platform_fee_amount,
            tax_amount=self.tax_amount,
            commissions_total=self.commissions_total,
            net_payable=self.net_payable,
            anomaly_code=self.anomaly_code,
        )

    @classmethod
    def from_dto(
        cls, dto: EarningsRecord, run_id: UUID, created_by_id: UUID,
    ) -> EarningsRecordModel:
        return cls(
            id=dto.earnings_id,
            run_id=run_id,
            coach_id=dto.coach_id,
            period_code=dto.period_code,
            gross_revenue=dto.gross_revenue,
            platform_fee_amount=dto.platform_fee_amount,
            tax_amount=dto.tax_amount,
            commissions_total=dto.commissions_total,
            net_payable=dto.net_payable,
            anomaly_code=dto.anomaly_code,
            created_by_id=created_by_id,
            updated_by_id=None,
        )


class CommissionLedgerEntryModel(TrackedBase):
    """One commission credited to an ancestor by one settlement run."""

    __tablename__ = "settlement_commission_entries"

    __table_args__ = (
        Index("ix_commission_run_beneficiary", "run_id", "beneficiary_coach_id"),
        Index(
            "ix_commission_source_level", "source_earnings_id", "level", unique=True,
        ),
    )

    run_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("settlement_runs.id"), nullable=False,
    )
    source_earnings_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("settlement_earnings_records.id"), nullable=False,
    )
    period_code: Mapped[str] = mapped_column(String(20), nullable=False)
    payer_coach_id: Mapped[str] = mapped_column(String(100), nullable=False)
    beneficiary_coach_id: Mapped[str] = mapped_column(String(100), nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    rank: Mapped[str] = mapped_column(String(50), nullable=False)
    rate_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(nullable=False)

    def to_dto(self) -> CommissionLedgerEntry:
        from settlement_engines.commission import CommissionLedgerEntry

        return CommissionLedgerEntry(
            source_earnings_id=self.source_earnings_id,
            payer_coach_id=self.payer_coach_id,
            beneficiary_coach_id=self.beneficiary_coach_id,
            level=self.level,
            rank=self.rank,
            rate_bps=self.rate_bps,
            amount=self.amount,
            period_code=self.period_code,
        )

    @classmethod
    def from_dto(
        cls, dto: CommissionLedgerEntry, run_id: UUID, created_by_id: UUID,
    ) -> CommissionLedgerEntryModel:
        return cls(
            run_id=run_id,
            source_earnings_id=dto.source_earnings_id,
            period_code=dto.period_code,
            payer_coach_id=dto.payer_coach_id,
            beneficiary_coach_id=dto.beneficiary_coach_id,
            level=dto.level,
            rank=dto.rank,
            rate_bps=dto.rate_bps,
            amount=dto.amount,
            created_by_id=created_by_id,
            updated_by_id=None,
        )
