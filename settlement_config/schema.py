"""
Configuration schema (``settlement_config.schema``).

Frozen dataclasses describing the financial policy and payout execution
settings.  A ``FinancialPolicy`` instance is the per-run snapshot: it is
built once at run start and passed by parameter through the whole pipeline.

All percentages are integer basis points; all amounts are integer minor
units of ``currency``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from settlement_kernel.domain.money import bps_to_percent

# Commission tiers from lowest to highest.
RANK_ORDER: tuple[str, ...] = ("bronze", "silver", "gold", "platinum", "diamond")


class PayoutFrequency(str, Enum):
    """How often a settlement period closes."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    MANUAL = "manual"  # Only on-demand runs; the scheduler never fires


@dataclass(frozen=True)
class CommissionTier:
    """One row of the rank -> rate commission table."""

    rank: str
    rate_bps: int


@dataclass(frozen=True)
class FinancialPolicy:
    """
    Fee, tax, commission and payout policy for one settlement run.

    Contract:
        Immutable.  An administrative edit produces a new instance that is
        picked up by the next run's snapshot.
    """

    platform_fee_bps: int
    minimum_fee: int
    tax_rate_bps: int
    commission_table: tuple[CommissionTier, ...]
    max_commission_levels: int
    commission_cap: int | None
    minimum_payout_amount: int
    payout_frequency: PayoutFrequency
    currency: str = "INR"
    version: str = "1"

    def rate_for_rank(self, rank: str | None) -> int | None:
        """Commission rate for ``rank``, or None when the rank is unknown."""
        if rank is None:
            return None
        needle = rank.strip().lower()
        for tier in self.commission_table:
            if tier.rank == needle:
                return tier.rate_bps
        return None

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe representation persisted with every settlement run."""
        return {
            "version": self.version,
            "currency": self.currency,
            "platform_fee_percent": str(bps_to_percent(self.platform_fee_bps)),
            "minimum_fee": self.minimum_fee,
            "tax_rate_percent": str(bps_to_percent(self.tax_rate_bps)),
            "commission_table": {
                tier.rank: str(bps_to_percent(tier.rate_bps))
                for tier in self.commission_table
            },
            "max_commission_levels": self.max_commission_levels,
            "commission_cap": self.commission_cap,
            "minimum_payout_amount": self.minimum_payout_amount,
            "payout_frequency": self.payout_frequency.value,
        }


@dataclass(frozen=True)
class ExecutionSettings:
    """Payout executor tuning: fan-out, retry budget, backoff, timeouts."""

    fan_out: int = 4
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    gateway_timeout_seconds: float = 10.0

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (exponential, capped)."""
        delay = self.backoff_base_seconds * (2 ** max(attempt - 1, 0))
        return min(delay, self.backoff_max_seconds)


@dataclass(frozen=True)
class SettlementConfiguration:
    """Everything one policy file declares."""

    policy: FinancialPolicy
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    checksum: str | None = None
