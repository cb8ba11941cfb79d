"""
ReconciliationSyncer -- drives in-flight payouts to their terminal state.

Contract:
    ``sync(items)`` asks the gateway for the status of every item that is
    ``submitted`` with a gateway reference and applies the mapped
    transition.  ``apply_status`` is the single writer of terminal states
    derived from gateway status; the executor calls it too when a
    submission returns an already-terminal status.

Invariants enforced:
    - Idempotent: terminal items are never touched; ``processing`` is a
      no-op; applying the same status twice changes nothing the second time.
    - A transient query failure leaves the item unchanged and is counted.
    - Gateway-reported failure becomes ``failed`` while retry budget
      remains, ``failed_final`` once it is spent.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from settlement_batch.domain.types import SyncSummary
from settlement_batch.gateway.base import GatewayStatus, PayoutGateway
from settlement_batch.services.key_lock import KeyedLock
from settlement_batch.services.payout_repository import PayoutRepository
from settlement_kernel.domain.payout import PayoutBatchItem, PayoutState
from settlement_kernel.exceptions import GatewayError
from settlement_kernel.logging_config import LogContext, get_logger

logger = get_logger("batch.reconciler")

GATEWAY_REPORTED_FAILURE = "GATEWAY_REPORTED_FAILURE"


@dataclass(frozen=True)
class SyncReport:
    items: tuple[PayoutBatchItem, ...]
    summary: SyncSummary


class ReconciliationSyncer:
    def __init__(
        self,
        gateway: PayoutGateway,
        repository: PayoutRepository,
        max_attempts: int,
        locks: KeyedLock | None = None,
    ):
        self._gateway = gateway
        self._repository = repository
        self._max_attempts = max_attempts
        self._locks = locks or KeyedLock()

    def apply_status(
        self,
        idempotency_key: str,
        status: GatewayStatus,
        gateway_ref: str | None = None,
        detail: str | None = None,
    ) -> PayoutBatchItem:
        """Apply one gateway status to one item; returns the stored item."""
        item = self._repository.require(idempotency_key)

        if item.is_terminal or status == GatewayStatus.PROCESSING:
            return item
        if item.state != PayoutState.SUBMITTED:
            logger.warning("payout_status_ignored", extra={
                "idempotency_key": idempotency_key,
                "state": item.state.value,
                "gateway_status": status.value,
            })
            return item

        if status == GatewayStatus.COMPLETED:
            return self._repository.transition(
                idempotency_key, PayoutState.COMPLETED, gateway_ref=gateway_ref,
            )

        to_state = (
            PayoutState.FAILED_FINAL
            if item.attempt_count >= self._max_attempts
            else PayoutState.FAILED
        )
        return self._repository.transition(
            idempotency_key, to_state,
            gateway_ref=gateway_ref,
            error_code=GATEWAY_REPORTED_FAILURE,
            error_message=detail or "gateway reported the payout as failed",
        )

    def sync(self, items: Iterable[PayoutBatchItem]) -> tuple[PayoutBatchItem, ...]:
        """Reconcile ``items``; returns their stored state afterwards."""
        return self.reconcile(items).items

    def reconcile(self, items: Iterable[PayoutBatchItem]) -> SyncReport:
        results: list[PayoutBatchItem] = []
        checked = completed = failed = processing = errors = 0

        for item in items:
            key = item.idempotency_key
            with LogContext.bind(coach_id=item.coach_id, idempotency_key=key):
                with self._locks.hold(key):
                    current = self._repository.require(key)
                    if not current.is_in_flight:
                        results.append(current)
                        continue

                    checked += 1
                    try:
                        status = self._gateway.query_status(current.gateway_ref)
                    except GatewayError as exc:
                        errors += 1
                        logger.warning("payout_status_query_failed", extra={
                            "gateway_ref": current.gateway_ref,
                            "error_code": exc.code,
                            "detail": exc.detail,
                        })
                        results.append(current)
                        continue

                    updated = self.apply_status(key, status)

            if status == GatewayStatus.PROCESSING:
                processing += 1
            elif updated.state == PayoutState.COMPLETED:
                completed += 1
            else:
                failed += 1
            results.append(updated)

        summary = SyncSummary(
            checked=checked,
            completed=completed,
            failed=failed,
            still_processing=processing,
            errors=errors,
        )
        logger.info("payout_sync_finished", extra={
            "checked": checked,
            "completed": completed,
            "failed": failed,
            "still_processing": processing,
            "errors": errors,
        })
        return SyncReport(items=tuple(results), summary=summary)
