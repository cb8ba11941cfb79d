"""Imperative shell of the settlement pipeline: persistence, payout execution, sync."""

from settlement_batch.services.audit_trail import PayoutAuditEntry, PayoutAuditTrail
from settlement_batch.services.executor import PayoutExecutor
from settlement_batch.services.key_lock import KeyedLock
from settlement_batch.services.ledger_reader import LedgerReader
from settlement_batch.services.payout_repository import PayoutRepository
from settlement_batch.services.reconciler import ReconciliationSyncer, SyncReport
from settlement_batch.services.sources import (
    CoachDirectory,
    ConfirmedPayment,
    PaymentsStore,
)
from settlement_batch.services.sql_sources import SqlCoachDirectory, SqlPaymentsStore

__all__ = [
    "CoachDirectory",
    "ConfirmedPayment",
    "KeyedLock",
    "LedgerReader",
    "PaymentsStore",
    "PayoutAuditEntry",
    "PayoutAuditTrail",
    "PayoutExecutor",
    "PayoutRepository",
    "ReconciliationSyncer",
    "SqlCoachDirectory",
    "SqlPaymentsStore",
    "SyncReport",
]
