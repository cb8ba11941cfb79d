"""
SettlementScheduler -- in-process trigger for settlement jobs.

Contract:
    Each ``tick()`` opens a session, runs ``execute_run`` for the most
    recently closed period (by the policy's ``payout_frequency``) unless that
    period already has a finished run, then runs ``sync_pending``.

Architecture: settlement_batch/services.  Uses settlement_batch.domain.period
    for pure period arithmetic and the orchestrator for all work.

Invariants enforced:
    - All timestamps from the injected Clock.
    - Manual payout frequency never fires a run; syncing still happens.
    - Graceful shutdown: ``stop()`` asks the running orchestrator to stop
      submitting, then waits for the thread.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from sqlalchemy.orm import Session

from settlement_batch.domain.period import closed_period_before
from settlement_batch.domain.types import RunSummary, SyncSummary
from settlement_config import PolicySource
from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.logging_config import get_logger

if TYPE_CHECKING:
    from settlement_batch.orchestrator import SettlementOrchestrator

logger = get_logger("batch.scheduler")


@dataclass(frozen=True)
class TickResult:
    period_code: str | None = None
    run: RunSummary | None = None
    sync: SyncSummary | None = None


class SettlementScheduler:
    """In-process polling scheduler for settlement runs.

    Non-goals:
        - NOT a distributed scheduler (no leader election).
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        orchestrator_factory: Callable[[Session], SettlementOrchestrator],
        policy_source: PolicySource,
        clock: Clock | None = None,
        tick_interval_seconds: float = 300,
    ):
        self._session_factory = session_factory
        self._orchestrator_factory = orchestrator_factory
        self._policy_source = policy_source
        self._clock = clock or SystemClock()
        self._tick_interval = tick_interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._active: SettlementOrchestrator | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> TickResult:
        """Fire a due settlement run and sync in-flight payouts (public for testing)."""
        session = self._session_factory()
        try:
            orchestrator = self._orchestrator_factory(session)
            self._active = orchestrator

            period_code = None
            run = None
            frequency = self._policy_source().payout_frequency
            period = closed_period_before(self._clock.now(), frequency)
            if period is not None and not self._stop_event.is_set():
                if not orchestrator.has_finished_run(period):
                    period_code = period.code
                    logger.info("scheduled_run_firing", extra={"period_code": period.code})
                    run = orchestrator.execute_run(period)

            sync = orchestrator.sync_pending()
            return TickResult(period_code=period_code, run=run, sync=sync)
        except Exception:
            session.rollback()
            logger.exception("scheduler_tick_failed")
            return TickResult()
        finally:
            self._active = None
            session.close()

    def start(self) -> None:
        """Start the scheduler in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="settlement-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the scheduler to finish.

        Args:
            timeout: Max seconds to wait for the thread to finish.
        """
        self._stop_event.set()
        active = self._active
        if active is not None:
            active.request_stop()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(timeout=self._tick_interval)
