"""
Settlement engines -- pure calculation layer.

Engines take frozen inputs and a policy snapshot and return frozen results.
They never read the clock, the database or the network.
"""

from settlement_engines.commission import (
    CommissionLedgerEntry,
    EarningsInput,
    EarningsRecord,
    FeeCommissionCalculator,
    SponsorLink,
    earnings_id_for,
    zero_record,
)
from settlement_engines.eligibility import (
    build_batch,
    compute_payables,
    idempotency_key_for,
)
from settlement_engines.tracer import traced_engine

__all__ = [
    "CommissionLedgerEntry",
    "EarningsInput",
    "EarningsRecord",
    "FeeCommissionCalculator",
    "SponsorLink",
    "build_batch",
    "compute_payables",
    "earnings_id_for",
    "idempotency_key_for",
    "traced_engine",
    "zero_record",
]
