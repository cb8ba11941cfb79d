"""
PayoutExecutor -- per-item payout submission with failure isolation.

Contract:
    ``execute(batch)`` submits one gateway call per item, each item on its
    own state machine.  One item's failure never affects another.

Architecture: settlement_batch/services.  Imports from settlement_batch.domain,
    settlement_batch.gateway and the payout repository.

Invariants enforced:
    - ``submitted`` is committed BEFORE the gateway call, so a crash after
      the call can never lead to a second, un-keyed submission.
    - Items already completed, failed_final, or submitted with a gateway
      reference are skipped; the gateway is not called for them.
    - At most one attempt per idempotency key is in progress at any time
      (KeyedLock).  The lock is NOT held during backoff.
    - Transient errors retry up to ``max_attempts`` with exponential
      backoff, then ``failed_final``.  Permanent errors go to
      ``failed_final`` at once.
    - Fan-out is bounded by ``ExecutionSettings.fan_out``.

Cancellation:
    After ``request_stop()`` no new submission or retry starts.  Calls
    already in flight finish and persist their result.  Items never started
    are reported as ``not_attempted``; an item waiting to retry stays
    ``failed`` and is picked up by the next run.
"""

from __future__ import annotations

import contextvars
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from settlement_batch.domain.types import BatchResult, PayoutFailure
from settlement_batch.gateway.base import GatewayStatus, PayoutGateway
from settlement_batch.services.key_lock import KeyedLock
from settlement_batch.services.payout_repository import PayoutRepository
from settlement_batch.services.reconciler import ReconciliationSyncer
from settlement_config.schema import ExecutionSettings
from settlement_kernel.domain.payout import PayoutBatchItem, PayoutState
from settlement_kernel.exceptions import GatewayError, PermanentGatewayError
from settlement_kernel.logging_config import LogContext, get_logger

logger = get_logger("batch.executor")

UNEXPECTED_ERROR = "UNEXPECTED_GATEWAY_ERROR"


class _Kind(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_ATTEMPTED = "not_attempted"


@dataclass(frozen=True)
class _Outcome:
    kind: _Kind
    item: PayoutBatchItem
    failure: PayoutFailure | None = None


def _describe(exc: Exception) -> str:
    detail = getattr(exc, "detail", None)
    return f"{exc} ({detail})" if detail else str(exc)


class PayoutExecutor:
    """Payout submission engine.

    Contract:
        - ``execute()`` runs every item of a batch and returns a BatchResult
          in batch order.
        - ``request_stop()`` stops new submissions.

    Non-goals:
        - Does NOT persist earnings or decide what is payable.
        - Does NOT poll for terminal status; the ReconciliationSyncer does.
    """

    def __init__(
        self,
        gateway: PayoutGateway,
        repository: PayoutRepository,
        settings: ExecutionSettings | None = None,
        syncer: ReconciliationSyncer | None = None,
        locks: KeyedLock | None = None,
        sleep: Callable[[float], object] | None = None,
    ):
        self._gateway = gateway
        self._repository = repository
        self._settings = settings or ExecutionSettings()
        self._locks = locks or KeyedLock()
        self._syncer = syncer or ReconciliationSyncer(
            gateway, repository, self._settings.max_attempts, locks=self._locks,
        )
        self._stop_event = threading.Event()
        self._sleep = sleep or self._stop_event.wait

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def request_stop(self) -> None:
        self._stop_event.set()
        logger.warning("payout_stop_requested")

    def reset(self) -> None:
        """Clear a previous stop request."""
        self._stop_event.clear()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def execute(
        self, batch: Sequence[PayoutBatchItem], run_id: UUID | None = None,
    ) -> BatchResult:
        """Submit every item of ``batch``.

        Raises:
            ValueError: If an item carries no idempotency key (dry-run item).
        """
        for item in batch:
            if item.idempotency_key is None:
                raise ValueError(
                    f"Payout item for coach {item.coach_id} has no idempotency key"
                )

        logger.info("payout_batch_started", extra={
            "item_count": len(batch),
            "fan_out": self._settings.fan_out,
            "max_attempts": self._settings.max_attempts,
        })

        with ThreadPoolExecutor(
            max_workers=max(self._settings.fan_out, 1),
            thread_name_prefix="payout",
        ) as pool:
            # Each worker inherits the caller's log context (run_id, period).
            futures = [
                pool.submit(contextvars.copy_context().run, self._process, item, run_id)
                for item in batch
            ]
            outcomes = [f.result() for f in futures]

        result = BatchResult(
            succeeded=tuple(o.item for o in outcomes if o.kind == _Kind.SUCCEEDED),
            failed=tuple(o.item for o in outcomes if o.kind == _Kind.FAILED),
            skipped=tuple(o.item for o in outcomes if o.kind == _Kind.SKIPPED),
            not_attempted=tuple(
                o.item for o in outcomes if o.kind == _Kind.NOT_ATTEMPTED
            ),
            failures=tuple(o.failure for o in outcomes if o.failure is not None),
        )

        logger.info("payout_batch_finished", extra={
            "succeeded": len(result.succeeded),
            "failed": len(result.failed),
            "skipped": len(result.skipped),
            "not_attempted": len(result.not_attempted),
            "total_submitted": result.total_submitted,
        })
        return result

    # -------------------------------------------------------------------------
    # Per-item state machine
    # -------------------------------------------------------------------------

    def _process(self, item: PayoutBatchItem, run_id: UUID | None) -> _Outcome:
        with LogContext.bind(coach_id=item.coach_id, idempotency_key=item.idempotency_key):
            attempted = False
            while True:
                if self._stop_event.is_set():
                    return self._stopped(item, attempted)

                with self._locks.hold(item.idempotency_key):
                    outcome, delay = self._attempt(item, run_id)
                attempted = True

                if outcome is not None:
                    return outcome
                self._sleep(delay)

    def _stopped(self, item: PayoutBatchItem, attempted: bool) -> _Outcome:
        current = self._repository.get(item.idempotency_key) or item
        if not attempted:
            logger.info("payout_not_attempted", extra={"coach_id": item.coach_id})
            return _Outcome(_Kind.NOT_ATTEMPTED, current)
        logger.info("payout_retry_abandoned_on_stop", extra={
            "coach_id": item.coach_id,
            "attempt": current.attempt_count,
        })
        return _Outcome(_Kind.FAILED, current, PayoutFailure(
            coach_id=current.coach_id,
            idempotency_key=current.idempotency_key,
            error_code=current.last_error_code or UNEXPECTED_ERROR,
            message=current.last_error_message or "stopped before retry",
            final=False,
        ))

    def _attempt(
        self, item: PayoutBatchItem, run_id: UUID | None,
    ) -> tuple[_Outcome | None, float]:
        """One attempt under the key lock.

        Returns (outcome, 0) when the item is settled for this run, or
        (None, delay) when it should be retried after ``delay`` seconds.
        """
        key = item.idempotency_key
        current = self._repository.require(key)

        if current.is_terminal or current.is_in_flight:
            logger.info("payout_skipped", extra={
                "state": current.state.value,
                "gateway_ref": current.gateway_ref,
            })
            return _Outcome(_Kind.SKIPPED, current), 0

        if current.attempt_count >= self._settings.max_attempts:
            # Budget spent by an earlier run that stopped before finalizing,
            # or by orphan submissions that never received a gateway reference.
            final = self._repository.transition(
                key, PayoutState.FAILED_FINAL,
                error_code=current.last_error_code or UNEXPECTED_ERROR,
                error_message=current.last_error_message or (
                    "retry budget spent without a gateway acknowledgement"
                ),
                run_id=run_id,
            )
            return self._failed(final, final=True), 0

        submitted = self._repository.transition(
            key, PayoutState.SUBMITTED, increment_attempt=True, run_id=run_id,
        )

        try:
            submission = self._gateway.submit_payout(
                key, submitted.coach_id, submitted.amount, submitted.currency,
            )
        except PermanentGatewayError as exc:
            logger.warning("payout_permanent_failure", extra={
                "error_code": exc.code,
                "detail": exc.detail,
                "attempt": submitted.attempt_count,
            })
            final = self._repository.transition(
                key, PayoutState.FAILED_FINAL,
                error_code=exc.code, error_message=_describe(exc),
            )
            return self._failed(final, final=True), 0
        except GatewayError as exc:
            # TransientGatewayError and unclassified gateway errors retry.
            error_code, message = exc.code, _describe(exc)
        except Exception as exc:
            # Unknown failures are retried under the same idempotency key.
            logger.exception("payout_unexpected_error", extra={
                "attempt": submitted.attempt_count,
            })
            error_code, message = UNEXPECTED_ERROR, str(exc)
        else:
            accepted = self._repository.transition(
                key, PayoutState.SUBMITTED, gateway_ref=submission.gateway_ref,
            )
            if submission.status != GatewayStatus.PROCESSING:
                accepted = self._syncer.apply_status(
                    key, submission.status,
                    gateway_ref=submission.gateway_ref,
                    detail=submission.detail,
                )
            if accepted.state in (PayoutState.FAILED, PayoutState.FAILED_FINAL):
                return self._failed(
                    accepted, final=accepted.state == PayoutState.FAILED_FINAL,
                ), 0
            return _Outcome(_Kind.SUCCEEDED, accepted), 0

        attempt = submitted.attempt_count
        if attempt >= self._settings.max_attempts:
            logger.warning("payout_retry_budget_exhausted", extra={
                "error_code": error_code,
                "attempt": attempt,
            })
            final = self._repository.transition(
                key, PayoutState.FAILED_FINAL,
                error_code=error_code, error_message=message,
            )
            return self._failed(final, final=True), 0

        failed = self._repository.transition(
            key, PayoutState.FAILED, error_code=error_code, error_message=message,
        )
        delay = self._settings.backoff_delay(attempt)
        logger.info("payout_retry_scheduled", extra={
            "error_code": error_code,
            "attempt": failed.attempt_count,
            "delay_seconds": delay,
        })
        return None, delay

    @staticmethod
    def _failed(item: PayoutBatchItem, final: bool) -> _Outcome:
        return _Outcome(_Kind.FAILED, item, PayoutFailure(
            coach_id=item.coach_id,
            idempotency_key=item.idempotency_key,
            error_code=item.last_error_code or UNEXPECTED_ERROR,
            message=item.last_error_message or "",
            final=final,
        ))
