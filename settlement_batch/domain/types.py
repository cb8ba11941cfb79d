"""
settlement_batch.domain.types -- Pure frozen dataclasses for settlement runs.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections, returned across the orchestrator boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from settlement_engines.commission import CommissionLedgerEntry, EarningsRecord
from settlement_kernel.domain.payout import PayoutBatchItem


class RunStatus(str, Enum):
    """Outcome of one ``execute_run``."""

    RUNNING = "running"  # Persisted while the run is in progress
    COMPLETED = "completed"  # Every attempted item accepted by the gateway
    PARTIALLY_COMPLETED = "partially_completed"  # Some items failed
    FAILED = "failed"  # Every attempted item failed
    CANCELLED = "cancelled"  # Stop requested before the batch finished
    NOTHING_ATTEMPTED = "nothing_attempted"  # Validation failed, no gateway call
    ABORTED = "aborted"  # Pipeline or database error


@dataclass(frozen=True)
class PayoutFailure:
    """Why one coach's payout did not go through."""

    coach_id: str
    idempotency_key: str
    error_code: str
    message: str
    final: bool = True


@dataclass(frozen=True)
class BatchResult:
    """Returned by ``PayoutExecutor.execute``.

    ``succeeded`` holds items the gateway accepted (submitted or completed);
    ``skipped`` holds items that needed no call; ``not_attempted`` holds items
    left untouched because a stop was requested.
    """

    succeeded: tuple[PayoutBatchItem, ...] = ()
    failed: tuple[PayoutBatchItem, ...] = ()
    skipped: tuple[PayoutBatchItem, ...] = ()
    not_attempted: tuple[PayoutBatchItem, ...] = ()
    failures: tuple[PayoutFailure, ...] = ()

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def total_submitted(self) -> int:
        return sum(i.amount for i in self.succeeded)


@dataclass(frozen=True)
class ComputationIssue:
    """A coach whose record was zeroed by a computation anomaly."""

    coach_id: str
    error_code: str
    message: str


@dataclass(frozen=True)
class BatchPlan:
    """
    Result of ``preview_run``.

    Contains no timestamps or generated ids, so two previews over unchanged
    inputs compare equal.
    """

    period_code: str
    policy_version: str
    policy_checksum: str
    currency: str
    items: tuple[PayoutBatchItem, ...]
    earnings: tuple[EarningsRecord, ...]
    commissions: tuple[CommissionLedgerEntry, ...]
    excluded_coach_ids: tuple[str, ...] = ()
    issues: tuple[ComputationIssue, ...] = ()

    @property
    def total_payable(self) -> int:
        return sum(i.amount for i in self.items)

    @property
    def total_gross(self) -> int:
        return sum(r.gross_revenue for r in self.earnings)

    @property
    def total_fees(self) -> int:
        return sum(r.platform_fee_amount for r in self.earnings)

    @property
    def total_tax(self) -> int:
        return sum(r.tax_amount for r in self.earnings)

    @property
    def total_commissions(self) -> int:
        return sum(e.amount for e in self.commissions)


@dataclass(frozen=True)
class RunSummary:
    """Returned by ``execute_run``: totals, counts and per-failure reasons."""

    run_id: UUID | None
    period_code: str
    status: RunStatus
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    not_attempted: int = 0
    total_submitted: int = 0
    total_completed: int = 0
    failures: tuple[PayoutFailure, ...] = ()
    issues: tuple[ComputationIssue, ...] = ()
    validation_errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class SyncSummary:
    """Returned by ``sync_pending``.

    ``resubmitted`` counts failed payouts the gateway accepted again;
    ``finalized`` counts those whose retry budget ran out.
    """

    checked: int = 0
    completed: int = 0
    failed: int = 0
    still_processing: int = 0
    errors: int = 0
    resubmitted: int = 0
    finalized: int = 0
