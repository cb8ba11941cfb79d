"""
Source protocols for the data settlement reads but does not own.

Contract:
    ``PaymentsStore`` returns confirmed payments for one coach in a UTC
    window ``[period_start, period_end)``.  ``CoachDirectory`` lists the
    coaches to settle and resolves each one's sponsor chain, nearest
    ancestor first, carrying every ancestor's CURRENT rank.

    Implementations raise ``LedgerUnavailableError`` when the backing store
    is unreachable, and ``MissingSponsorChainError`` /
    ``SponsorChainCycleError`` for broken hierarchies.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable

from settlement_engines.commission import SponsorLink


@dataclass(frozen=True)
class ConfirmedPayment:
    """One confirmed client payment credited to a coach."""

    amount: int  # minor units
    currency: str
    timestamp: datetime


@runtime_checkable
class PaymentsStore(Protocol):
    def get_confirmed_payments(
        self, coach_id: str, period_start: datetime, period_end: datetime,
    ) -> list[ConfirmedPayment]:
        ...


@runtime_checkable
class CoachDirectory(Protocol):
    def list_settleable_coaches(self) -> list[str]:
        """Coach ids whose revenue is settled, in any order."""
        ...

    def get_sponsor_chain(self, coach_id: str) -> list[SponsorLink]:
        ...
