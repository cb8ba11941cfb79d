"""
Tests for SettlementOrchestrator -- the end-to-end settlement pipeline.

Covers: preview (dry run, deterministic, writes nothing), execute_run
(persistence, payout submission, run status), idempotent re-runs,
validation problems reported as NOTHING_ATTEMPTED, pipeline errors,
computation anomalies, cancellation and reconciliation.

Uses in-memory SQLite, fake payments store / directory / gateway and a
deterministic clock.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import SQLAlchemyError

from settlement_batch.domain.types import RunStatus
from settlement_batch.gateway.base import GatewayStatus
from settlement_batch.models.directory import CoachProfileModel, ConfirmedPaymentModel
from settlement_batch.models.payout import PayoutItemModel
from settlement_batch.models.settlement import (
    CommissionLedgerEntryModel,
    EarningsRecordModel,
    SettlementRunModel,
)
from settlement_batch.orchestrator import SettlementOrchestrator, policy_checksum
from settlement_config import StaticPolicySource
from settlement_config.schema import ExecutionSettings
from settlement_engines.eligibility import idempotency_key_for
from settlement_kernel.domain.payout import PayoutState
from settlement_kernel.exceptions import (
    GatewayTimeoutError,
    InvalidDestinationError,
    LedgerUnavailableError,
    PolicyUnavailableError,
    PolicyValidationError,
)
from tests.conftest import TEST_ACTOR_ID, make_policy, no_sleep

PERIOD = "2024-01"


@pytest.fixture
def make_orchestrator(session, payments, directory, gateway, clock, fast_settings):
    def _make(policy=None, settings=None, policy_source=None):
        return SettlementOrchestrator(
            session=session,
            policy_source=policy_source or StaticPolicySource(policy or make_policy()),
            payments_store=payments,
            directory=directory,
            gateway=gateway,
            settings=settings or fast_settings,
            clock=clock,
            actor_id=TEST_ACTOR_ID,
            sleep=no_sleep,
        )
    return _make


@pytest.fixture
def two_level(directory, payments):
    """leaf (10,000 revenue) <- mid (gold) <- root (silver)."""
    directory.add("root", rank="silver")
    directory.add("mid", sponsor_id="root", rank="gold")
    directory.add("leaf", sponsor_id="mid", rank="bronze")
    payments.add("leaf", 10_000)


# =============================================================================
# execute_run
# =============================================================================


class TestExecuteRun:
    def test_single_coach(self, make_orchestrator, directory, payments, gateway, session):
        directory.add("c1")
        payments.add("c1", 10_000)

        summary = make_orchestrator().execute_run(PERIOD)

        assert summary.status == RunStatus.COMPLETED
        assert summary.attempted == 1
        assert summary.succeeded == 1
        assert summary.total_submitted == 8_550
        assert gateway.submissions == [(idempotency_key_for("c1", PERIOD), "c1", 8_550, "INR")]
        item = session.query(PayoutItemModel).one()
        assert item.state == PayoutState.SUBMITTED.value
        assert item.run_id == summary.run_id

    def test_two_level_commissions_paid_to_sponsors(
        self, make_orchestrator, two_level, gateway, session,
    ):
        summary = make_orchestrator(make_policy(minimum_payout_amount=100)).execute_run(PERIOD)

        paid = {coach: amount for _, coach, amount, _ in gateway.submissions}
        assert paid == {"leaf": 7_268, "mid": 855, "root": 427}
        assert summary.total_submitted == 7_268 + 855 + 427
        entries = session.query(CommissionLedgerEntryModel).order_by(
            CommissionLedgerEntryModel.level,
        ).all()
        assert [(e.beneficiary_coach_id, e.level, e.amount) for e in entries] == [
            ("mid", 1, 855),
            ("root", 2, 427),
        ]

    def test_earnings_persisted_and_balanced(self, make_orchestrator, two_level, session):
        summary = make_orchestrator().execute_run(PERIOD)

        rows = session.query(EarningsRecordModel).filter_by(run_id=summary.run_id).all()
        assert sorted(r.coach_id for r in rows) == ["leaf", "mid", "root"]
        for row in rows:
            assert row.to_dto().is_balanced

    def test_below_threshold_not_paid(self, make_orchestrator, two_level, gateway):
        # Default test policy: minimum payout 1,000; mid earns 855, root 427.
        summary = make_orchestrator().execute_run(PERIOD)

        assert gateway.submitted_coaches() == ["leaf"]
        assert summary.attempted == 1

    def test_commission_cap_applied(self, make_orchestrator, two_level, gateway):
        make_orchestrator(make_policy(commission_cap=500, minimum_payout_amount=100)).execute_run(
            PERIOD,
        )

        paid = {coach: amount for _, coach, amount, _ in gateway.submissions}
        assert paid["mid"] == 500
        assert paid["leaf"] == 8_550 - 500 - 427

    def test_partial_failure(self, make_orchestrator, directory, payments, gateway):
        for coach in ("a", "b", "c"):
            directory.add(coach)
            payments.add(coach, 20_000)
        gateway.script("b", InvalidDestinationError("closed account"))

        summary = make_orchestrator().execute_run(PERIOD)

        assert summary.status == RunStatus.PARTIALLY_COMPLETED
        assert (summary.succeeded, summary.failed) == (2, 1)
        assert summary.failures[0].coach_id == "b"
        assert summary.failures[0].error_code == "INVALID_DESTINATION"

    def test_all_failed(self, make_orchestrator, directory, payments, gateway):
        directory.add("a")
        payments.add("a", 20_000)
        gateway.script("a", InvalidDestinationError("closed account"))

        summary = make_orchestrator().execute_run(PERIOD)

        assert summary.status == RunStatus.FAILED

    def test_immediate_completion_counted(self, make_orchestrator, directory, payments, gateway):
        directory.add("a")
        payments.add("a", 10_000)
        gateway.script("a", GatewayStatus.COMPLETED)

        summary = make_orchestrator().execute_run(PERIOD)

        assert summary.total_completed == 8_550

    def test_policy_snapshot_taken_once_and_stored(
        self, make_orchestrator, directory, payments, session,
    ):
        directory.add("a")
        payments.add("a", 10_000)
        policy = make_policy()
        calls = []

        def source():
            calls.append(1)
            return policy

        summary = make_orchestrator(policy_source=source).execute_run(PERIOD)

        assert len(calls) == 1
        run = session.get(SettlementRunModel, summary.run_id)
        assert run.policy_version == "test-1"
        assert run.policy_checksum == policy_checksum(policy)
        assert run.policy_snapshot["platform_fee_percent"] == "10"
        assert run.status == RunStatus.COMPLETED.value
        assert run.completed_at is not None

    def test_run_logs_carry_run_context(self, make_orchestrator, directory, payments, captured_logs):
        directory.add("a")
        payments.add("a", 10_000)

        summary = make_orchestrator().execute_run(PERIOD)

        changes = [r for r in captured_logs() if r["message"] == "payout_state_changed"]
        assert changes
        assert all(r["run_id"] == str(summary.run_id) for r in changes)
        assert all(r["period_code"] == PERIOD for r in changes)


# =============================================================================
# Re-runs
# =============================================================================


class TestReRun:
    def test_rerun_never_resubmits(self, make_orchestrator, directory, payments, gateway, session):
        directory.add("a")
        directory.add("b")
        payments.add("a", 10_000)
        payments.add("b", 10_000)
        gateway.script("b", GatewayStatus.COMPLETED)
        orchestrator = make_orchestrator()

        first = orchestrator.execute_run(PERIOD)
        second = orchestrator.execute_run(PERIOD)

        assert first.succeeded == 2
        assert second.skipped == 2
        assert second.attempted == 0
        assert len(gateway.submissions) == 2
        assert session.query(PayoutItemModel).count() == 2
        assert orchestrator.latest_run(PERIOD).id == second.run_id
        assert orchestrator.latest_run(PERIOD).run_number == 2

    def test_failed_final_item_not_retried_by_rerun(
        self, make_orchestrator, directory, payments, gateway,
    ):
        directory.add("a")
        payments.add("a", 10_000)
        gateway.script("a", *[GatewayTimeoutError("slow")] * 3)
        orchestrator = make_orchestrator()

        first = orchestrator.execute_run(PERIOD)
        second = orchestrator.execute_run(PERIOD)

        assert first.failures[0].final is True
        assert second.skipped == 1
        assert len(gateway.submissions) == 3

    def test_late_revenue_does_not_change_stored_amount(
        self, make_orchestrator, directory, payments, gateway, session,
    ):
        directory.add("a")
        payments.add("a", 10_000)
        orchestrator = make_orchestrator()
        orchestrator.execute_run(PERIOD)

        payments.add("a", 5_000)
        orchestrator.execute_run(PERIOD)

        assert session.query(PayoutItemModel).one().amount == 8_550
        assert len(gateway.submissions) == 1
        latest = orchestrator.earnings_for_period(PERIOD)
        assert latest[0].gross_revenue == 15_000


# =============================================================================
# preview_run
# =============================================================================


class TestPreviewRun:
    def test_preview_writes_nothing(self, make_orchestrator, two_level, gateway, session):
        plan = make_orchestrator().preview_run(PERIOD)

        assert gateway.submissions == []
        assert session.query(SettlementRunModel).count() == 0
        assert session.query(PayoutItemModel).count() == 0
        assert session.query(EarningsRecordModel).count() == 0
        assert all(item.idempotency_key is None for item in plan.items)

    def test_preview_is_deterministic(self, make_orchestrator, two_level):
        orchestrator = make_orchestrator()

        assert orchestrator.preview_run(PERIOD) == orchestrator.preview_run(PERIOD)

    def test_preview_totals_and_exclusions(self, make_orchestrator, two_level):
        plan = make_orchestrator().preview_run(PERIOD)

        assert [i.coach_id for i in plan.items] == ["leaf"]
        assert plan.excluded_coach_ids == ("mid", "root")
        assert plan.total_gross == 10_000
        assert plan.total_fees == 1_000
        assert plan.total_tax == 450
        assert plan.total_commissions == 1_282
        assert plan.policy_version == "test-1"

    def test_preview_matches_execution(self, make_orchestrator, two_level, gateway):
        orchestrator = make_orchestrator(make_policy(minimum_payout_amount=100))
        plan = orchestrator.preview_run(PERIOD)

        orchestrator.execute_run(PERIOD)

        assert [(i.coach_id, i.amount) for i in plan.items] == sorted(
            (coach, amount) for _, coach, amount, _ in gateway.submissions
        )

    def test_preview_rejects_invalid_policy(self, make_orchestrator, two_level):
        with pytest.raises(PolicyValidationError):
            make_orchestrator(make_policy(platform_fee_bps=20_000)).preview_run(PERIOD)


# =============================================================================
# Validation problems and pipeline errors
# =============================================================================


class TestRejectedRuns:
    def test_invalid_policy_attempts_nothing(self, make_orchestrator, two_level, gateway, session):
        summary = make_orchestrator(make_policy(tax_rate_bps=-1)).execute_run(PERIOD)

        assert summary.status == RunStatus.NOTHING_ATTEMPTED
        assert any("tax_rate_bps" in e for e in summary.validation_errors)
        assert gateway.submissions == []
        run = session.get(SettlementRunModel, summary.run_id)
        assert run.status == RunStatus.NOTHING_ATTEMPTED.value

    def test_broken_sponsor_chain_attempts_nothing(
        self, make_orchestrator, directory, payments, gateway,
    ):
        directory.add("ok")
        directory.add("orphan", sponsor_id="deleted-coach")
        payments.add("ok", 10_000)

        summary = make_orchestrator().execute_run(PERIOD)

        assert summary.status == RunStatus.NOTHING_ATTEMPTED
        assert "deleted-coach" in summary.validation_errors[0]
        assert gateway.submissions == []

    def test_sponsor_cycle_attempts_nothing(self, make_orchestrator, directory, gateway):
        directory.add("a", sponsor_id="b")
        directory.add("b", sponsor_id="a")

        summary = make_orchestrator().execute_run(PERIOD)

        assert summary.status == RunStatus.NOTHING_ATTEMPTED
        assert gateway.submissions == []

    def test_invalid_period_attempts_nothing(self, make_orchestrator, session):
        summary = make_orchestrator().execute_run("2024-13")

        assert summary.status == RunStatus.NOTHING_ATTEMPTED
        assert summary.run_id is None
        assert session.query(SettlementRunModel).count() == 0

    def test_policy_unavailable_raises(self, make_orchestrator, session):
        def broken_source():
            raise OSError("policy volume not mounted")

        with pytest.raises(PolicyUnavailableError):
            make_orchestrator(policy_source=broken_source).execute_run(PERIOD)
        assert session.query(SettlementRunModel).count() == 0

    def test_ledger_unavailable_aborts_run(self, make_orchestrator, directory, payments, gateway):
        directory.add("a")
        payments.unavailable = True
        orchestrator = make_orchestrator()

        with pytest.raises(LedgerUnavailableError):
            orchestrator.execute_run(PERIOD)

        assert orchestrator.latest_run(PERIOD).status == RunStatus.ABORTED.value
        assert gateway.submissions == []

    def test_database_error_aborts_run(
        self, make_orchestrator, directory, payments, gateway, monkeypatch,
    ):
        directory.add("a")
        payments.add("a", 10_000)
        orchestrator = make_orchestrator()

        def locked(*args, **kwargs):
            raise SQLAlchemyError("database is locked")

        monkeypatch.setattr(orchestrator.repository, "upsert_pending", locked)

        with pytest.raises(SQLAlchemyError):
            orchestrator.execute_run(PERIOD)

        run = orchestrator.latest_run(PERIOD)
        assert run.status == RunStatus.ABORTED.value
        assert run.completed_at is not None
        assert run.error_summary.startswith("SQLAlchemyError: database is locked")
        assert gateway.submissions == []

    def test_currency_anomaly_zeroes_one_coach(
        self, make_orchestrator, directory, payments, gateway,
    ):
        directory.add("a")
        directory.add("b")
        payments.add("a", 10_000, currency="USD")
        payments.add("b", 10_000)
        orchestrator = make_orchestrator()

        summary = orchestrator.execute_run(PERIOD)

        assert gateway.submitted_coaches() == ["b"]
        assert summary.status == RunStatus.COMPLETED
        assert [(i.coach_id, i.error_code) for i in summary.issues] == [("a", "CURRENCY_MISMATCH")]
        zeroed = [r for r in orchestrator.earnings_for_period(PERIOD) if r.coach_id == "a"][0]
        assert zeroed.net_payable == 0
        assert zeroed.anomaly_code == "CURRENCY_MISMATCH"


# =============================================================================
# Cancellation and sync
# =============================================================================


class TestCancellation:
    def test_stop_mid_run_then_resume(self, make_orchestrator, directory, payments, gateway):
        for coach in ("a", "b", "c"):
            directory.add(coach)
            payments.add(coach, 10_000)
        orchestrator = make_orchestrator(settings=ExecutionSettings(fan_out=1))
        gateway.on_submit = lambda coach_id: orchestrator.request_stop()

        first = orchestrator.execute_run(PERIOD)

        assert first.status == RunStatus.CANCELLED
        assert first.succeeded == 1
        assert first.not_attempted == 2

        gateway.on_submit = None
        orchestrator.resume()
        second = orchestrator.execute_run(PERIOD)

        assert second.status == RunStatus.COMPLETED
        assert second.skipped == 1
        assert sorted(gateway.submitted_coaches()) == ["a", "b", "c"]

    def test_stop_before_run_is_not_lost(self, make_orchestrator, directory, payments, gateway):
        directory.add("a")
        payments.add("a", 10_000)
        orchestrator = make_orchestrator()
        orchestrator.request_stop()

        stopped = orchestrator.execute_run(PERIOD)

        assert stopped.status == RunStatus.CANCELLED
        assert stopped.not_attempted == 1
        assert gateway.submissions == []

        orchestrator.resume()

        assert orchestrator.execute_run(PERIOD).status == RunStatus.COMPLETED
        assert gateway.submitted_coaches() == ["a"]


class TestSyncPending:
    def test_completes_in_flight_items(self, make_orchestrator, directory, payments, gateway):
        for coach in ("a", "b"):
            directory.add(coach)
            payments.add(coach, 10_000)
        orchestrator = make_orchestrator()
        orchestrator.execute_run(PERIOD)
        for key, *_ in gateway.submissions:
            gateway.set_status(gateway.ref_for(key), GatewayStatus.COMPLETED)

        summary = orchestrator.sync_pending()

        assert summary.checked == 2
        assert summary.completed == 2
        states = {i.coach_id: i.state for i in orchestrator.repository.list_for_period(PERIOD)}
        assert states == {"a": PayoutState.COMPLETED, "b": PayoutState.COMPLETED}
        assert orchestrator.sync_pending().checked == 0

    def test_resubmits_failed_payouts(self, make_orchestrator, directory, payments, gateway):
        directory.add("a")
        payments.add("a", 10_000)
        gateway.script("a", GatewayStatus.FAILED)
        orchestrator = make_orchestrator()
        orchestrator.execute_run(PERIOD)
        key = idempotency_key_for("a", PERIOD)
        assert orchestrator.repository.require(key).state == PayoutState.FAILED

        summary = orchestrator.sync_pending()

        assert summary.resubmitted == 1
        assert summary.finalized == 0
        stored = orchestrator.repository.require(key)
        assert stored.state == PayoutState.SUBMITTED
        assert stored.attempt_count == 2
        assert [k for k, *_ in gateway.submissions] == [key, key]

    def test_sync_filtered_by_period(self, make_orchestrator, directory, payments, gateway):
        directory.add("a")
        payments.add("a", 10_000)
        orchestrator = make_orchestrator()
        orchestrator.execute_run(PERIOD)

        assert orchestrator.sync_pending("2023-12").checked == 0
        assert orchestrator.sync_pending(PERIOD).still_processing == 1


# =============================================================================
# SQL wiring
# =============================================================================


class TestFromSession:
    def test_reads_coaches_and_payments_from_database(self, session, gateway, clock):
        session.add_all([
            CoachProfileModel(coach_id="root", rank="gold"),
            CoachProfileModel(coach_id="leaf", sponsor_id="root", rank="bronze"),
            ConfirmedPaymentModel(
                coach_id="leaf",
                amount_minor=10_000,
                currency="INR",
                confirmed_at=datetime(2024, 1, 9, tzinfo=timezone.utc),
            ),
        ])
        session.commit()

        orchestrator = SettlementOrchestrator.from_session(
            session,
            gateway,
            policy_source=StaticPolicySource(make_policy(minimum_payout_amount=100)),
            settings=ExecutionSettings(fan_out=1),
            clock=clock,
            actor_id=TEST_ACTOR_ID,
            sleep=no_sleep,
        )
        summary = orchestrator.execute_run(PERIOD)

        assert summary.status == RunStatus.COMPLETED
        paid = {coach: amount for _, coach, amount, _ in gateway.submissions}
        assert paid == {"leaf": 8_550 - 855, "root": 855}
