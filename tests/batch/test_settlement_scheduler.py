"""
Tests for SettlementScheduler -- tick() firing and lifecycle.

Validates: the most recently closed period runs once, manual frequency
never fires, failed ticks are contained and retried on the next tick,
failed payouts are resubmitted until the retry budget runs out,
sync_pending runs every tick, start/stop lifecycle.
"""

import pytest

from settlement_batch.domain.types import RunStatus
from settlement_batch.gateway.base import GatewayStatus
from settlement_batch.orchestrator import SettlementOrchestrator
from settlement_batch.services.scheduler import SettlementScheduler
from settlement_config import StaticPolicySource
from settlement_config.schema import PayoutFrequency
from tests.conftest import TEST_ACTOR_ID, make_policy, no_sleep


@pytest.fixture
def make_scheduler(session_factory, payments, directory, gateway, clock, fast_settings):
    def _make(frequency=PayoutFrequency.MONTHLY):
        source = StaticPolicySource(make_policy(payout_frequency=frequency))

        def orchestrator_factory(session):
            return SettlementOrchestrator(
                session=session,
                policy_source=source,
                payments_store=payments,
                directory=directory,
                gateway=gateway,
                settings=fast_settings,
                clock=clock,
                actor_id=TEST_ACTOR_ID,
                sleep=no_sleep,
            )

        return SettlementScheduler(
            session_factory, orchestrator_factory, source, clock=clock,
            tick_interval_seconds=3600,
        )
    return _make


@pytest.fixture
def coach(directory, payments):
    directory.add("a")
    payments.add("a", 10_000)


class TestTick:
    def test_runs_most_recently_closed_month(self, make_scheduler, coach, gateway):
        result = make_scheduler().tick()

        assert result.period_code == "2024-01"
        assert result.run.status == RunStatus.COMPLETED
        assert gateway.submitted_coaches() == ["a"]
        assert result.sync.still_processing == 1

    def test_finished_period_not_rerun(self, make_scheduler, coach, gateway):
        scheduler = make_scheduler()
        scheduler.tick()
        gateway.set_status(gateway.ref_for(gateway.submissions[0][0]), GatewayStatus.COMPLETED)

        second = scheduler.tick()

        assert second.run is None
        assert second.sync.completed == 1
        assert len(gateway.submissions) == 1

    def test_weekly_frequency(self, make_scheduler, coach):
        # 2024-02-10 is a Saturday in ISO week 6.
        assert make_scheduler(PayoutFrequency.WEEKLY).tick().period_code == "2024-W05"

    def test_manual_frequency_only_syncs(self, make_scheduler, coach, gateway):
        result = make_scheduler(PayoutFrequency.MANUAL).tick()

        assert result.run is None
        assert result.sync is not None
        assert gateway.submissions == []

    def test_gateway_failure_after_finished_run_is_retried(self, make_scheduler, coach, gateway):
        scheduler = make_scheduler()
        first = scheduler.tick()
        assert first.run.status == RunStatus.COMPLETED
        ref = gateway.ref_for(gateway.submissions[0][0])
        gateway.set_status(ref, GatewayStatus.FAILED)

        second = scheduler.tick()

        assert second.run is None
        assert second.sync.failed == 1
        assert second.sync.resubmitted == 1
        assert gateway.submitted_coaches() == ["a", "a"]

        gateway.set_status(ref, GatewayStatus.COMPLETED)
        third = scheduler.tick()

        assert third.sync.completed == 1
        assert third.sync.resubmitted == 0
        assert len(gateway.submissions) == 2

    def test_gateway_failures_stop_at_retry_budget(self, make_scheduler, coach, gateway):
        scheduler = make_scheduler()
        scheduler.tick()
        ref = gateway.ref_for(gateway.submissions[0][0])

        results = []
        for _ in range(4):
            gateway.set_status(ref, GatewayStatus.FAILED)
            results.append(scheduler.tick().sync)

        # fast_settings allows three attempts in total.
        assert [s.resubmitted for s in results] == [1, 1, 0, 0]
        assert [s.failed for s in results] == [1, 1, 1, 0]
        assert len(gateway.submissions) == 3

    def test_stop_between_check_and_run_is_honoured(
        self, make_scheduler, coach, gateway, monkeypatch,
    ):
        scheduler = make_scheduler()

        def stop_then_not_finished(orchestrator, period):
            scheduler.stop(timeout=1)
            return False

        monkeypatch.setattr(SettlementOrchestrator, "has_finished_run", stop_then_not_finished)

        result = scheduler.tick()

        assert result.run.status == RunStatus.CANCELLED
        assert gateway.submissions == []

    def test_failed_tick_contained_and_retried(
        self, make_scheduler, coach, payments, gateway, captured_logs,
    ):
        scheduler = make_scheduler()
        payments.unavailable = True

        failed = scheduler.tick()

        assert failed.run is None and failed.sync is None
        assert any(r["message"] == "scheduler_tick_failed" for r in captured_logs())

        payments.unavailable = False
        retried = scheduler.tick()

        assert retried.run.status == RunStatus.COMPLETED
        assert gateway.submitted_coaches() == ["a"]


class TestLifecycle:
    def test_start_and_stop(self, make_scheduler):
        scheduler = make_scheduler(PayoutFrequency.MANUAL)

        scheduler.start()
        assert scheduler.is_running

        scheduler.stop(timeout=5)
        assert not scheduler.is_running

    def test_start_is_idempotent(self, make_scheduler):
        scheduler = make_scheduler(PayoutFrequency.MANUAL)
        scheduler.start()
        thread = scheduler._thread

        scheduler.start()

        assert scheduler._thread is thread
        scheduler.stop(timeout=5)
