"""
Tests for payout batch construction.

Covers:
- Payable = own net payable + commission credits
- Minimum payout threshold and non-positive amounts
- Deterministic ordering and idempotency keys
- Dry-run batches and mixed-period input
"""

import uuid

import pytest

from settlement_engines.commission import CommissionLedgerEntry, EarningsRecord
from settlement_engines.eligibility import (
    build_batch,
    compute_payables,
    idempotency_key_for,
)
from settlement_kernel.domain.payout import PayoutState
from tests.conftest import make_policy


def _record(coach_id: str, net: int, period: str = "2024-01") -> EarningsRecord:
    return EarningsRecord(
        earnings_id=uuid.uuid4(),
        coach_id=coach_id,
        period_code=period,
        gross_revenue=net,
        platform_fee_amount=0,
        tax_amount=0,
        commissions_total=0,
        net_payable=net,
    )


def _commission(payer: str, beneficiary: str, amount: int, level: int = 1) -> CommissionLedgerEntry:
    return CommissionLedgerEntry(
        source_earnings_id=uuid.uuid4(),
        payer_coach_id=payer,
        beneficiary_coach_id=beneficiary,
        level=level,
        rank="gold",
        rate_bps=1000,
        amount=amount,
        period_code="2024-01",
    )


class TestComputePayables:
    def test_commission_credits_added_to_beneficiary(self):
        payables = compute_payables(
            [_record("a", 5_000), _record("b", 2_000)],
            [_commission("a", "b", 700), _commission("a", "c", 300, level=2)],
        )

        assert payables == {"a": 5_000, "b": 2_700, "c": 300}


class TestBuildBatch:
    def test_items_sorted_by_coach_with_keys(self):
        items = build_batch(
            [_record("zeta", 5_000), _record("alpha", 3_000)],
            make_policy(),
        )

        assert [i.coach_id for i in items] == ["alpha", "zeta"]
        assert items[0].idempotency_key == idempotency_key_for("alpha", "2024-01")
        assert all(i.state == PayoutState.PENDING for i in items)
        assert all(i.currency == "INR" and i.period_code == "2024-01" for i in items)

    def test_below_threshold_excluded(self):
        items = build_batch(
            [_record("a", 999), _record("b", 1_000), _record("c", 0)],
            make_policy(minimum_payout_amount=1_000),
        )

        assert [i.coach_id for i in items] == ["b"]

    def test_zero_threshold_still_excludes_zero_amounts(self):
        items = build_batch(
            [_record("a", 0), _record("b", 1)],
            make_policy(minimum_payout_amount=0),
        )

        assert [(i.coach_id, i.amount) for i in items] == [("b", 1)]

    def test_commission_only_beneficiary_is_paid(self):
        items = build_batch(
            [_record("payer", 10_000)],
            make_policy(),
            commissions=[_commission("payer", "sponsor", 1_500)],
        )

        assert {i.coach_id: i.amount for i in items} == {"payer": 10_000, "sponsor": 1_500}

    def test_dry_run_items_have_no_key(self):
        items = build_batch([_record("a", 5_000)], make_policy(), dry_run=True)

        assert items[0].idempotency_key is None

    def test_records_from_two_periods_rejected(self):
        with pytest.raises(ValueError, match="several periods"):
            build_batch(
                [_record("a", 5_000, "2024-01"), _record("b", 5_000, "2024-02")],
                make_policy(),
            )

    def test_empty_input_gives_empty_batch(self):
        assert build_batch([], make_policy(), period_code="2024-01") == ()


class TestIdempotencyKey:
    def test_stable_and_distinct(self):
        key = idempotency_key_for("coach-1", "2024-01")

        assert key == idempotency_key_for("coach-1", "2024-01")
        assert key != idempotency_key_for("coach-1", "2024-02")
        assert key != idempotency_key_for("coach-2", "2024-01")
        assert key.startswith("po-") and len(key) == 35
