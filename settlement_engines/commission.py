"""
Module: settlement_engines.commission
Responsibility:
    Compute one coach's settlement figures for one period: platform fee,
    tax, multi-level sponsor commissions, and net payable.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import settlement_kernel/domain and settlement_config/schema.

Invariants enforced:
    - Conservation: fee + tax + sum(commissions) + net_payable == gross,
      exactly, in minor units.
    - No figure is negative and no figure exceeds gross.
    - Exact Decimal arithmetic throughout; one conversion to minor units per
      figure, ROUND_HALF_UP.  The residual left by rounding individual
      commissions is assigned by largest remainder, ties to the nearer level,
      so replays assign the same paisa to the same sponsor.
    - Commission depth never exceeds ``policy.max_commission_levels``; no
      single beneficiary earns more than ``policy.commission_cap`` from one
      earnings record.

Failure modes:
    - AmountOverflowError when gross exceeds ``MAX_MINOR_AMOUNT``.
    - Gross <= 0 yields an all-zero record (negative gross is tagged with
      ``NEGATIVE_GROSS``) and no commissions.

Usage:
    calculator = FeeCommissionCalculator()
    record, commissions = calculator.compute(
        earnings_input=EarningsInput(coach_id="c-1", period_code="2024-01",
                                     gross_revenue=100_000),
        sponsor_chain=(SponsorLink("c-0", "gold"),),
        policy=policy,
    )
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from settlement_config.schema import FinancialPolicy
from settlement_engines.tracer import traced_engine
from settlement_kernel.domain.money import (
    MAX_MINOR_AMOUNT,
    apply_bps,
    floor_to_minor,
    round_half_up_to_minor,
)
from settlement_kernel.exceptions import AmountOverflowError
from settlement_kernel.logging_config import get_logger

logger = get_logger("engines.commission")

# Namespace for deterministic earnings/commission identifiers.
SETTLEMENT_NAMESPACE = uuid.UUID("5b0f3c8e-6f1d-4e0a-9a51-3f2d1c7e9b42")

NEGATIVE_GROSS = "NEGATIVE_GROSS"


def earnings_id_for(coach_id: str, period_code: str, run_id: uuid.UUID | None = None) -> uuid.UUID:
    """Deterministic earnings id; run-scoped when ``run_id`` is given."""
    scope = str(run_id) if run_id is not None else "preview"
    return uuid.uuid5(SETTLEMENT_NAMESPACE, f"earnings|{scope}|{period_code}|{coach_id}")


@dataclass(frozen=True)
class EarningsInput:
    """Confirmed revenue for one coach in one period (minor units)."""

    coach_id: str
    period_code: str
    gross_revenue: int
    earnings_id: uuid.UUID | None = None

    def resolved_earnings_id(self) -> uuid.UUID:
        if self.earnings_id is not None:
            return self.earnings_id
        return earnings_id_for(self.coach_id, self.period_code)


@dataclass(frozen=True)
class SponsorLink:
    """One ancestor in a sponsor chain, nearest first; ``rank`` is current rank."""

    coach_id: str
    rank: str | None


@dataclass(frozen=True)
class EarningsRecord:
    """
    Per-coach, per-period settlement figures.

    Contract:
        fee + tax + commissions_total + net_payable == gross_revenue.
    """

    earnings_id: uuid.UUID
    coach_id: str
    period_code: str
    gross_revenue: int
    platform_fee_amount: int
    tax_amount: int
    commissions_total: int
    net_payable: int
    anomaly_code: str | None = None

    @property
    def distributable(self) -> int:
        return self.gross_revenue - self.platform_fee_amount - self.tax_amount

    @property
    def is_balanced(self) -> bool:
        return (
            self.platform_fee_amount + self.tax_amount + self.commissions_total + self.net_payable
            == self.gross_revenue
        )


@dataclass(frozen=True)
class CommissionLedgerEntry:
    """
    One commission credited to an ancestor, sourced from one earnings record.

    ``level`` 1 is the direct sponsor.
    """

    source_earnings_id: uuid.UUID
    payer_coach_id: str
    beneficiary_coach_id: str
    level: int
    rank: str
    rate_bps: int
    amount: int
    period_code: str


def zero_record(
    earnings_input: EarningsInput, anomaly_code: str | None = None,
) -> EarningsRecord:
    """All-zero, balanced record for non-positive gross and computation anomalies."""
    return EarningsRecord(
        earnings_id=earnings_input.resolved_earnings_id(),
        coach_id=earnings_input.coach_id,
        period_code=earnings_input.period_code,
        gross_revenue=0,
        platform_fee_amount=0,
        tax_amount=0,
        commissions_total=0,
        net_payable=0,
        anomaly_code=anomaly_code,
    )


@dataclass
class _Share:
    level: int
    link: SponsorLink
    rank: str
    rate_bps: int
    exact: Decimal
    amount: int = 0


class FeeCommissionCalculator:
    """
    Fee, tax and commission calculator.

    Contract:
        ``compute`` is a pure function of its arguments.
    Non-goals:
        Resolving sponsor chains or reading revenue; callers pass both in.
    """

    @traced_engine(
        "fee_commission", "1.0",
        fingerprint_fields=("earnings_input", "sponsor_chain"),
    )
    def compute(
        self,
        *,
        earnings_input: EarningsInput,
        sponsor_chain: Sequence[SponsorLink],
        policy: FinancialPolicy,
    ) -> tuple[EarningsRecord, tuple[CommissionLedgerEntry, ...]]:
        """
        Compute the earnings record and commission entries for one coach.

        Raises:
            AmountOverflowError: If gross revenue exceeds MAX_MINOR_AMOUNT.
        """
        gross = earnings_input.gross_revenue
        coach_id = earnings_input.coach_id

        if gross > MAX_MINOR_AMOUNT:
            raise AmountOverflowError(coach_id, gross, MAX_MINOR_AMOUNT)

        if gross <= 0:
            if gross < 0:
                logger.warning("earnings_negative_gross", extra={
                    "coach_id": coach_id,
                    "gross_revenue": gross,
                })
                return zero_record(earnings_input, NEGATIVE_GROSS), ()
            return zero_record(earnings_input), ()

        gross_exact = Decimal(gross)
        fee_exact = max(Decimal(policy.minimum_fee), apply_bps(gross, policy.platform_fee_bps))
        fee_exact = min(fee_exact, gross_exact)
        tax_exact = apply_bps(gross_exact - fee_exact, policy.tax_rate_bps)

        fee = round_half_up_to_minor(fee_exact)
        # Two half-up roundings can overshoot gross by one unit.
        tax = min(round_half_up_to_minor(tax_exact), gross - fee)
        distributable = gross - fee - tax

        shares = self._commission_shares(coach_id, distributable, sponsor_chain, policy)

        remaining_exact = Decimal(distributable) - sum(
            (s.exact for s in shares), Decimal(0),
        )
        net = round_half_up_to_minor(remaining_exact)
        net += self._assign_residual(distributable - net, shares, policy)

        earnings_id = earnings_input.resolved_earnings_id()
        entries = tuple(
            CommissionLedgerEntry(
                source_earnings_id=earnings_id,
                payer_coach_id=coach_id,
                beneficiary_coach_id=s.link.coach_id,
                level=s.level,
                rank=s.rank,
                rate_bps=s.rate_bps,
                amount=s.amount,
                period_code=earnings_input.period_code,
            )
            for s in shares
            if s.amount > 0
        )
        commissions_total = sum(e.amount for e in entries)

        record = EarningsRecord(
            earnings_id=earnings_id,
            coach_id=coach_id,
            period_code=earnings_input.period_code,
            gross_revenue=gross,
            platform_fee_amount=fee,
            tax_amount=tax,
            commissions_total=commissions_total,
            net_payable=net,
        )
        assert record.is_balanced, f"Unbalanced earnings record: {record}"

        logger.debug("earnings_computed", extra={
            "coach_id": coach_id,
            "gross_revenue": gross,
            "platform_fee_amount": fee,
            "tax_amount": tax,
            "commissions_total": commissions_total,
            "net_payable": net,
            "commission_levels": len(entries),
        })
        return record, entries

    def _commission_shares(
        self,
        coach_id: str,
        distributable: int,
        sponsor_chain: Sequence[SponsorLink],
        policy: FinancialPolicy,
    ) -> list[_Share]:
        """Exact commission per ancestor, clipped by cap and what is left."""
        remaining = Decimal(distributable)
        earned: dict[str, Decimal] = {}
        shares: list[_Share] = []

        for level, link in enumerate(sponsor_chain[: policy.max_commission_levels], start=1):
            rate = policy.rate_for_rank(link.rank)
            if rate is None:
                logger.warning("commission_rank_missing", extra={
                    "coach_id": coach_id,
                    "sponsor_id": link.coach_id,
                    "rank": link.rank,
                    "level": level,
                })
                continue

            exact = apply_bps(distributable, rate)
            if policy.commission_cap is not None:
                headroom = Decimal(policy.commission_cap) - earned.get(link.coach_id, Decimal(0))
                if exact > headroom:
                    logger.info("commission_capped", extra={
                        "coach_id": coach_id,
                        "sponsor_id": link.coach_id,
                        "level": level,
                        "commission_cap": policy.commission_cap,
                    })
                    exact = headroom
            exact = max(min(exact, remaining), Decimal(0))
            if exact == 0:
                continue

            earned[link.coach_id] = earned.get(link.coach_id, Decimal(0)) + exact
            remaining -= exact
            shares.append(_Share(
                level=level,
                link=link,
                rank=link.rank.strip().lower(),
                rate_bps=rate,
                exact=exact,
            ))
        return shares

    @staticmethod
    def _assign_residual(
        commission_total: int, shares: list[_Share], policy: FinancialPolicy,
    ) -> int:
        """
        Round shares so they sum to ``commission_total``.

        Every share gets its floor; leftover units go one each by largest
        fractional remainder, ties to the lower level.  A unit that would push
        a beneficiary past the cap stays with the payer.  Returns the number
        of units handed back to net.
        """
        for s in shares:
            s.amount = floor_to_minor(s.exact)
        leftover = commission_total - sum(s.amount for s in shares)

        earned: dict[str, int] = {}
        for s in shares:
            earned[s.link.coach_id] = earned.get(s.link.coach_id, 0) + s.amount

        candidates = sorted(
            (s for s in shares if s.exact != s.amount),
            key=lambda s: (-(s.exact - s.amount), s.level),
        )
        for s in candidates:
            if leftover <= 0:
                break
            beneficiary = s.link.coach_id
            if policy.commission_cap is not None and earned[beneficiary] + 1 > policy.commission_cap:
                continue
            s.amount += 1
            earned[beneficiary] += 1
            leftover -= 1
        return max(leftover, 0)
