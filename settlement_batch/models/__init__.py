"""
settlement_batch.models -- ORM models for settlement persistence.

Architecture: settlement_batch/models. Imports from settlement_kernel.db.base only.
"""

from settlement_batch.models.directory import CoachProfileModel, ConfirmedPaymentModel
from settlement_batch.models.payout import PayoutAuditEntryModel, PayoutItemModel
from settlement_batch.models.settlement import (
    CommissionLedgerEntryModel,
    EarningsRecordModel,
    SettlementRunModel,
)

__all__ = [
    "CoachProfileModel",
    "CommissionLedgerEntryModel",
    "ConfirmedPaymentModel",
    "EarningsRecordModel",
    "PayoutAuditEntryModel",
    "PayoutItemModel",
    "SettlementRunModel",
]
