"""
settlement_batch -- settlement runs: persistence, payout execution, reconciliation.

Entry points:
    SettlementOrchestrator  preview_run / execute_run / sync_pending
    SettlementScheduler     period-rollover trigger
"""

from settlement_batch.orchestrator import SettlementOrchestrator
from settlement_batch.services.scheduler import SettlementScheduler

__all__ = [
    "SettlementOrchestrator",
    "SettlementScheduler",
]
