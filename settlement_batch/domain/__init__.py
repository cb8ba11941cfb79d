"""Pure domain types for settlement runs. ZERO I/O."""

from settlement_batch.domain.period import (
    SettlementPeriod,
    closed_period_before,
    coerce_period,
    period_containing,
)
from settlement_batch.domain.types import (
    BatchPlan,
    BatchResult,
    ComputationIssue,
    PayoutFailure,
    RunStatus,
    RunSummary,
    SyncSummary,
)

__all__ = [
    "BatchPlan",
    "BatchResult",
    "ComputationIssue",
    "PayoutFailure",
    "RunStatus",
    "RunSummary",
    "SettlementPeriod",
    "SyncSummary",
    "closed_period_before",
    "coerce_period",
    "period_containing",
]
