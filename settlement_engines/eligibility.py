"""
Module: settlement_engines.eligibility
Responsibility:
    Turn a period's earnings records and commission entries into the payout
    batch: one item per coach whose payable amount clears the policy minimum.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Payable = net_payable + commission credits earned as a beneficiary.
    - An item is included only when payable >= minimum_payout_amount and
      payable > 0.
    - Items are ordered by coach_id, so the same inputs always give the
      same batch.
    - Idempotency keys are a pure function of (coach_id, period_code); a
      dry-run batch carries no keys.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Sequence

from settlement_config.schema import FinancialPolicy
from settlement_engines.commission import CommissionLedgerEntry, EarningsRecord
from settlement_engines.tracer import traced_engine
from settlement_kernel.domain.payout import PayoutBatchItem
from settlement_kernel.logging_config import get_logger

logger = get_logger("engines.eligibility")


def idempotency_key_for(coach_id: str, period_code: str) -> str:
    digest = hashlib.sha256(f"{coach_id}|{period_code}".encode("utf-8")).hexdigest()
    return "po-" + digest[:32]


def compute_payables(
    earnings_records: Iterable[EarningsRecord],
    commissions: Iterable[CommissionLedgerEntry] = (),
) -> dict[str, int]:
    """Amount owed per coach: own net payable plus commission credits."""
    payables: dict[str, int] = {}
    for record in earnings_records:
        payables[record.coach_id] = payables.get(record.coach_id, 0) + record.net_payable
    for entry in commissions:
        beneficiary = entry.beneficiary_coach_id
        payables[beneficiary] = payables.get(beneficiary, 0) + entry.amount
    return payables


def _resolve_period(
    earnings_records: Sequence[EarningsRecord], period_code: str | None,
) -> str | None:
    codes = {r.period_code for r in earnings_records}
    if period_code is not None:
        codes.add(period_code)
    if len(codes) > 1:
        raise ValueError(f"Earnings records span several periods: {sorted(codes)}")
    return next(iter(codes), None)


@traced_engine("payout_eligibility", "1.0", fingerprint_fields=("period_code", "dry_run"))
def build_batch(
    earnings_records: Sequence[EarningsRecord],
    policy: FinancialPolicy,
    commissions: Sequence[CommissionLedgerEntry] = (),
    period_code: str | None = None,
    dry_run: bool = False,
) -> tuple[PayoutBatchItem, ...]:
    """
    Build the payout batch for one period.

    Args:
        earnings_records: Every earnings record of the period.
        policy: Run policy snapshot (minimum payout, currency).
        commissions: Commission entries of the period.
        period_code: Period of the batch; inferred from the records when None.
        dry_run: Produce items without idempotency keys.

    Raises:
        ValueError: If the records belong to more than one period.
    """
    period = _resolve_period(earnings_records, period_code)
    payables = compute_payables(earnings_records, commissions)

    items: list[PayoutBatchItem] = []
    below_threshold = 0
    for coach_id in sorted(payables):
        amount = payables[coach_id]
        if amount <= 0 or amount < policy.minimum_payout_amount:
            below_threshold += 1
            logger.debug("payout_below_threshold", extra={
                "coach_id": coach_id,
                "amount": amount,
                "minimum_payout_amount": policy.minimum_payout_amount,
            })
            continue
        key = None if dry_run or period is None else idempotency_key_for(coach_id, period)
        items.append(PayoutBatchItem(
            coach_id=coach_id,
            amount=amount,
            currency=policy.currency,
            idempotency_key=key,
            period_code=period,
        ))

    logger.info("payout_batch_built", extra={
        "period_code": period,
        "item_count": len(items),
        "below_threshold": below_threshold,
        "total_amount": sum(i.amount for i in items),
        "dry_run": dry_run,
    })
    return tuple(items)
