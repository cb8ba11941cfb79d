"""
SQL-backed PaymentsStore and CoachDirectory.

Contract:
    Both read through the caller's Session and never write.  Database
    errors surface as ``LedgerUnavailableError`` so the orchestrator can
    abort the run cleanly.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from settlement_batch.models.directory import CoachProfileModel, ConfirmedPaymentModel
from settlement_batch.services.sources import ConfirmedPayment
from settlement_engines.commission import SponsorLink
from settlement_kernel.exceptions import (
    LedgerUnavailableError,
    MissingSponsorChainError,
    SponsorChainCycleError,
)
from settlement_kernel.logging_config import get_logger

logger = get_logger("batch.sql_sources")

CONFIRMED = "confirmed"


class SqlPaymentsStore:
    def __init__(self, session: Session):
        self._session = session

    def get_confirmed_payments(
        self, coach_id: str, period_start: datetime, period_end: datetime,
    ) -> list[ConfirmedPayment]:
        try:
            rows = self._session.execute(
                select(ConfirmedPaymentModel)
                .where(ConfirmedPaymentModel.coach_id == coach_id)
                .where(ConfirmedPaymentModel.status == CONFIRMED)
                .where(ConfirmedPaymentModel.confirmed_at >= period_start)
                .where(ConfirmedPaymentModel.confirmed_at < period_end)
                .order_by(ConfirmedPaymentModel.confirmed_at)
            ).scalars().all()
        except SQLAlchemyError as exc:
            logger.error("payments_store_unavailable", extra={
                "coach_id": coach_id,
                "error": str(exc),
            })
            raise LedgerUnavailableError(str(exc)) from exc

        return [
            ConfirmedPayment(
                amount=row.amount_minor,
                currency=row.currency,
                timestamp=row.confirmed_at,
            )
            for row in rows
        ]


class SqlCoachDirectory:
    def __init__(self, session: Session):
        self._session = session

    def _profile(self, coach_id: str) -> CoachProfileModel | None:
        try:
            return self._session.execute(
                select(CoachProfileModel).where(CoachProfileModel.coach_id == coach_id)
            ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise LedgerUnavailableError(str(exc)) from exc

    def list_settleable_coaches(self) -> list[str]:
        try:
            return list(self._session.execute(
                select(CoachProfileModel.coach_id)
                .where(CoachProfileModel.is_active.is_(True))
                .order_by(CoachProfileModel.coach_id)
            ).scalars().all())
        except SQLAlchemyError as exc:
            raise LedgerUnavailableError(str(exc)) from exc

    def get_sponsor_chain(self, coach_id: str) -> list[SponsorLink]:
        """
        Ancestors of ``coach_id``, nearest first.

        Raises:
            MissingSponsorChainError: If the coach or a referenced sponsor
                does not exist.
            SponsorChainCycleError: If the chain revisits a coach.
        """
        profile = self._profile(coach_id)
        if profile is None:
            raise MissingSponsorChainError(coach_id)

        chain: list[SponsorLink] = []
        path = [coach_id]
        sponsor_id = profile.sponsor_id
        while sponsor_id:
            if sponsor_id in path:
                raise SponsorChainCycleError(coach_id, path + [sponsor_id])
            sponsor = self._profile(sponsor_id)
            if sponsor is None:
                raise MissingSponsorChainError(coach_id, sponsor_id)
            chain.append(SponsorLink(coach_id=sponsor.coach_id, rank=sponsor.rank))
            path.append(sponsor_id)
            sponsor_id = sponsor.sponsor_id
        return chain

    def fund_account_for(self, coach_id: str) -> str | None:
        """Payout destination registered for ``coach_id`` (gateway resolver)."""
        profile = self._profile(coach_id)
        return profile.fund_account_id if profile is not None else None
