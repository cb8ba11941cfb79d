"""
LedgerReader -- raw revenue per coach per settlement period.

Contract:
    ``read_revenue`` sums the confirmed payments that fall inside the
    period's half-open UTC window.  Payments outside the window are ignored
    even if the store returns them.

Failure modes:
    - CurrencyMismatchAnomaly: a payment is not in the settlement currency
      (no FX); the orchestrator zeroes that coach and continues.
    - LedgerUnavailableError: propagated from the store; aborts the run.
"""

from __future__ import annotations

from settlement_batch.domain.period import SettlementPeriod
from settlement_batch.services.sources import PaymentsStore
from settlement_kernel.exceptions import CurrencyMismatchAnomaly
from settlement_kernel.logging_config import get_logger

logger = get_logger("batch.ledger_reader")


class LedgerReader:
    def __init__(self, payments_store: PaymentsStore, currency: str):
        self._store = payments_store
        self._currency = currency

    def read_revenue(self, coach_id: str, period: SettlementPeriod) -> int:
        payments = self._store.get_confirmed_payments(coach_id, period.start, period.end)

        total = 0
        counted = 0
        for payment in payments:
            if not period.contains(payment.timestamp):
                continue
            if payment.currency != self._currency:
                raise CurrencyMismatchAnomaly(coach_id, self._currency, payment.currency)
            total += payment.amount
            counted += 1

        logger.debug("coach_revenue_read", extra={
            "coach_id": coach_id,
            "period_code": period.code,
            "payment_count": counted,
            "gross_revenue": total,
        })
        return total
