"""
PayoutRepository -- durable payout item state.

Contract:
    Every state transition is validated against the payout state machine,
    written with its audit entry, and COMMITTED before the method returns,
    so a crash never loses a ``submitted`` marker that preceded a gateway
    call.

Architecture: settlement_batch/services.  Imports from settlement_batch.models
    and kernel domain.

Invariants enforced:
    - One row per idempotency key (UNIQUE).
    - ``amount`` is fixed at first write; later runs never change it.
    - Terminal states are never left.

Thread safety:
    Payout workers share one Session.  All access goes through ``self.lock``
    (re-entrant) so a session is never used by two threads at once.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from uuid import UUID, uuid4

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from settlement_batch.models.payout import PayoutItemModel
from settlement_batch.services.audit_trail import PayoutAuditTrail
from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.domain.payout import (
    TERMINAL_STATES,
    PayoutBatchItem,
    PayoutState,
    can_transition,
)
from settlement_kernel.exceptions import (
    InvalidPayoutTransitionError,
    PayoutItemNotFoundError,
)
from settlement_kernel.logging_config import get_logger

logger = get_logger("batch.payout_repository")


class PayoutRepository:
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        actor_id: UUID | None = None,
        audit_trail: PayoutAuditTrail | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._actor_id = actor_id or uuid4()
        self._audit = audit_trail or PayoutAuditTrail(session, self._clock)
        self.lock = threading.RLock()

    @property
    def audit_trail(self) -> PayoutAuditTrail:
        return self._audit

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _row(self, idempotency_key: str) -> PayoutItemModel | None:
        return self._session.execute(
            select(PayoutItemModel).where(
                PayoutItemModel.idempotency_key == idempotency_key,
            )
        ).scalar_one_or_none()

    def get(self, idempotency_key: str) -> PayoutBatchItem | None:
        with self.lock:
            row = self._row(idempotency_key)
            return row.to_dto() if row is not None else None

    def require(self, idempotency_key: str) -> PayoutBatchItem:
        """
        Raises:
            PayoutItemNotFoundError: If no item has this key.
        """
        item = self.get(idempotency_key)
        if item is None:
            raise PayoutItemNotFoundError(idempotency_key)
        return item

    def list_for_period(self, period_code: str) -> list[PayoutBatchItem]:
        with self.lock:
            rows = self._session.execute(
                select(PayoutItemModel)
                .where(PayoutItemModel.period_code == period_code)
                .order_by(PayoutItemModel.coach_id)
            ).scalars().all()
            return [row.to_dto() for row in rows]

    def list_in_flight(self, period_code: str | None = None) -> list[PayoutBatchItem]:
        """Submitted items that hold a gateway reference, oldest period first."""
        with self.lock:
            stmt = (
                select(PayoutItemModel)
                .where(PayoutItemModel.state == PayoutState.SUBMITTED.value)
                .where(PayoutItemModel.gateway_ref.is_not(None))
            )
            if period_code is not None:
                stmt = stmt.where(PayoutItemModel.period_code == period_code)
            stmt = stmt.order_by(PayoutItemModel.period_code, PayoutItemModel.coach_id)
            return [row.to_dto() for row in self._session.execute(stmt).scalars().all()]

    def list_retryable(self, period_code: str | None = None) -> list[PayoutBatchItem]:
        """Items the executor still has to act on outside a run.

        ``failed`` items, plus ``submitted`` items that never received a
        gateway reference.  Whether budget remains is the executor's call.
        """
        with self.lock:
            stmt = select(PayoutItemModel).where(or_(
                PayoutItemModel.state == PayoutState.FAILED.value,
                and_(
                    PayoutItemModel.state == PayoutState.SUBMITTED.value,
                    PayoutItemModel.gateway_ref.is_(None),
                ),
            ))
            if period_code is not None:
                stmt = stmt.where(PayoutItemModel.period_code == period_code)
            stmt = stmt.order_by(PayoutItemModel.period_code, PayoutItemModel.coach_id)
            return [row.to_dto() for row in self._session.execute(stmt).scalars().all()]

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def upsert_pending(
        self, items: Sequence[PayoutBatchItem], run_id: UUID | None = None,
    ) -> list[PayoutBatchItem]:
        """
        Persist new items as ``pending``; return the stored state of each.

        Existing rows keep their state and amount.  A differing amount is
        logged as drift and the stored amount wins.
        """
        stored: list[PayoutBatchItem] = []
        with self.lock:
            try:
                for item in items:
                    row = self._row(item.idempotency_key)
                    if row is None:
                        row = PayoutItemModel.from_dto(
                            item.with_state(PayoutState.PENDING),
                            created_by_id=self._actor_id,
                            run_id=run_id,
                        )
                        self._session.add(row)
                        self._session.flush()
                        self._audit.record(
                            idempotency_key=row.idempotency_key,
                            coach_id=row.coach_id,
                            old_state=None,
                            new_state=PayoutState.PENDING.value,
                            actor_id=self._actor_id,
                            detail=f"amount={row.amount} {row.currency}",
                            run_id=run_id,
                        )
                    elif row.amount != item.amount:
                        logger.warning("payout_amount_drift", extra={
                            "idempotency_key": row.idempotency_key,
                            "coach_id": row.coach_id,
                            "stored_amount": row.amount,
                            "computed_amount": item.amount,
                            "state": row.state,
                        })
                    stored.append(row.to_dto())
                self._session.commit()
            except Exception:
                self._session.rollback()
                raise
        return stored

    def transition(
        self,
        idempotency_key: str,
        to_state: PayoutState,
        *,
        gateway_ref: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
        increment_attempt: bool = False,
        run_id: UUID | None = None,
    ) -> PayoutBatchItem:
        """
        Move one item to ``to_state`` and commit it with its audit entry.

        Raises:
            PayoutItemNotFoundError: If no item has this key.
            InvalidPayoutTransitionError: If the state machine forbids it.
        """
        with self.lock:
            try:
                row = self._row(idempotency_key)
                if row is None:
                    raise PayoutItemNotFoundError(idempotency_key)

                from_state = PayoutState(row.state)
                if not can_transition(from_state, to_state):
                    raise InvalidPayoutTransitionError(
                        idempotency_key, from_state.value, to_state.value,
                    )

                now = self._clock.now()
                row.state = to_state.value
                row.updated_by_id = self._actor_id
                if increment_attempt:
                    row.attempt_count += 1
                if gateway_ref is not None:
                    row.gateway_ref = gateway_ref
                if run_id is not None:
                    row.run_id = run_id
                if to_state == PayoutState.SUBMITTED:
                    row.submitted_at = now
                if to_state == PayoutState.COMPLETED:
                    row.last_error_code = None
                    row.last_error_message = None
                elif error_code is not None:
                    row.last_error_code = error_code
                    row.last_error_message = error_message
                if to_state in TERMINAL_STATES:
                    row.settled_at = now

                self._audit.record(
                    idempotency_key=idempotency_key,
                    coach_id=row.coach_id,
                    old_state=from_state.value,
                    new_state=to_state.value,
                    actor_id=self._actor_id,
                    attempt=row.attempt_count,
                    gateway_ref=row.gateway_ref,
                    error_code=error_code,
                    detail=error_message,
                    run_id=run_id,
                )
                self._session.commit()
            except Exception:
                self._session.rollback()
                raise

            logger.info("payout_state_changed", extra={
                "idempotency_key": idempotency_key,
                "coach_id": row.coach_id,
                "from_state": from_state.value,
                "to_state": to_state.value,
                "attempt": row.attempt_count,
                "error_code": error_code,
            })
            return row.to_dto()
