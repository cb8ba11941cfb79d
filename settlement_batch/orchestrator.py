"""
SettlementOrchestrator -- composes the settlement pipeline.

Contract:
    ``preview_run(period)``  Ledger Reader -> Calculator -> Batch Builder,
                             dry run, writes nothing.
    ``execute_run(period)``  full pipeline: snapshot policy, compute,
                             persist, submit payouts, summarize.
    ``sync_pending()``       reconcile in-flight payouts with the gateway.

    These three calls, plus ``request_stop()``, are the whole boundary an
    HTTP or CLI layer needs.

Architecture: settlement_batch (top-level).  The single place where the
    calculator, batch builder, executor, syncer and persistence are wired.

Invariants enforced:
    - The policy source is called ONCE per run; the frozen snapshot is passed
      by parameter to every stage and stored on the run row.
    - Validation problems (policy, sponsor chains, period code) stop the run
      before any gateway call; ``execute_run`` reports them as
      NOTHING_ATTEMPTED instead of raising.
    - Only pipeline-level errors (policy or ledger unavailable) and database
      errors propagate; the run row is marked ABORTED first.
    - Earnings and commission rows are written per run and never updated;
      the latest run of a period supersedes earlier ones.
    - Re-running a period never creates a second money-moving request for an
      item already submitted or completed (stored items keep state and amount).
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from settlement_batch.domain.period import SettlementPeriod, coerce_period
from settlement_batch.domain.types import (
    BatchPlan,
    BatchResult,
    ComputationIssue,
    RunStatus,
    RunSummary,
    SyncSummary,
)
from settlement_batch.gateway.base import PayoutGateway
from settlement_batch.models.settlement import (
    CommissionLedgerEntryModel,
    EarningsRecordModel,
    SettlementRunModel,
)
from settlement_batch.services.executor import PayoutExecutor
from settlement_batch.services.key_lock import KeyedLock
from settlement_batch.services.ledger_reader import LedgerReader
from settlement_batch.services.payout_repository import PayoutRepository
from settlement_batch.services.reconciler import ReconciliationSyncer
from settlement_batch.services.sources import CoachDirectory, PaymentsStore
from settlement_batch.services.sql_sources import SqlCoachDirectory, SqlPaymentsStore
from settlement_config import FilePolicySource, PolicySource
from settlement_config.schema import ExecutionSettings, FinancialPolicy
from settlement_config.validator import require_valid_policy, validate_policy
from settlement_engines.commission import (
    CommissionLedgerEntry,
    EarningsInput,
    EarningsRecord,
    FeeCommissionCalculator,
    earnings_id_for,
    zero_record,
)
from settlement_engines.eligibility import build_batch, compute_payables
from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.domain.payout import PayoutState
from settlement_kernel.exceptions import (
    ComputationAnomaly,
    PipelineError,
    PolicyUnavailableError,
    SettlementError,
    ValidationError,
)
from settlement_kernel.logging_config import LogContext, get_logger
from settlement_kernel.utils.hashing import hash_payload

logger = get_logger("batch.orchestrator")

# A period with a run in one of these states is not re-run by the scheduler.
FINISHED_RUN_STATUSES = (
    RunStatus.COMPLETED,
    RunStatus.PARTIALLY_COMPLETED,
    RunStatus.FAILED,
)


@dataclass(frozen=True)
class _Computation:
    earnings: tuple[EarningsRecord, ...]
    commissions: tuple[CommissionLedgerEntry, ...]
    issues: tuple[ComputationIssue, ...]


def policy_checksum(policy: FinancialPolicy) -> str:
    return hash_payload(policy.snapshot())


class SettlementOrchestrator:
    """Entry point for settlement runs.

    Contract:
        - ``from_session()`` factory wires the SQL payments store and coach
          directory.
        - One orchestrator serves one Session; runs are sequential.

    Non-goals:
        - Does NOT schedule itself (see SettlementScheduler).
        - Does NOT authenticate or authorize callers.
    """

    def __init__(
        self,
        session: Session,
        policy_source: PolicySource,
        payments_store: PaymentsStore,
        directory: CoachDirectory,
        gateway: PayoutGateway,
        settings: ExecutionSettings | None = None,
        clock: Clock | None = None,
        actor_id: UUID | None = None,
        calculator: FeeCommissionCalculator | None = None,
        sleep: Callable[[float], object] | None = None,
    ) -> None:
        self._session = session
        self._policy_source = policy_source
        self._payments_store = payments_store
        self._directory = directory
        self._settings = settings or ExecutionSettings()
        self._clock = clock or SystemClock()
        self._actor_id = actor_id or uuid4()
        self._calculator = calculator or FeeCommissionCalculator()

        self._repository = PayoutRepository(session, self._clock, self._actor_id)
        locks = KeyedLock()
        self._syncer = ReconciliationSyncer(
            gateway, self._repository, self._settings.max_attempts, locks=locks,
        )
        self._executor = PayoutExecutor(
            gateway,
            self._repository,
            self._settings,
            syncer=self._syncer,
            locks=locks,
            sleep=sleep,
        )

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_session(
        cls,
        session: Session,
        gateway: PayoutGateway,
        policy_source: PolicySource | None = None,
        settings: ExecutionSettings | None = None,
        clock: Clock | None = None,
        actor_id: UUID | None = None,
        sleep: Callable[[float], object] | None = None,
    ) -> SettlementOrchestrator:
        """Create an orchestrator reading payments and coaches from ``session``.

        Args:
            session: SQLAlchemy session for all persistence.
            gateway: Money-movement gateway.
            policy_source: Optional source; defaults to the policy file
                (``SETTLEMENT_POLICY_PATH`` or the bundled default).
            settings: Optional execution settings; defaults to the
                ``execution`` section of the policy file when the default
                source is used.
        """
        if policy_source is None:
            file_source = FilePolicySource()
            policy_source = file_source
            if settings is None:
                settings = file_source.execution_settings()

        return cls(
            session=session,
            policy_source=policy_source,
            payments_store=SqlPaymentsStore(session),
            directory=SqlCoachDirectory(session),
            gateway=gateway,
            settings=settings,
            clock=clock,
            actor_id=actor_id,
            sleep=sleep,
        )

    @property
    def repository(self) -> PayoutRepository:
        return self._repository

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def preview_run(self, period: SettlementPeriod | str) -> BatchPlan:
        """Compute the batch a run would submit, without writing anything.

        Raises:
            ValidationError: Invalid period, policy or sponsor chain.
            PipelineError: Policy or payments store unavailable.
        """
        period = coerce_period(period)
        with LogContext.bind(period_code=period.code, actor_id=str(self._actor_id)):
            policy = require_valid_policy(self._snapshot_policy())

            computation = self._compute(period, policy, run_id=None)
            items = build_batch(
                computation.earnings,
                policy,
                computation.commissions,
                period_code=period.code,
                dry_run=True,
            )
            payables = compute_payables(computation.earnings, computation.commissions)
            selected = {item.coach_id for item in items}

            plan = BatchPlan(
                period_code=period.code,
                policy_version=policy.version,
                policy_checksum=policy_checksum(policy),
                currency=policy.currency,
                items=items,
                earnings=computation.earnings,
                commissions=computation.commissions,
                excluded_coach_ids=tuple(sorted(set(payables) - selected)),
                issues=computation.issues,
            )
            logger.info("settlement_preview_built", extra={
                "item_count": len(plan.items),
                "total_payable": plan.total_payable,
                "excluded": len(plan.excluded_coach_ids),
            })
            return plan

    def execute_run(self, period: SettlementPeriod | str) -> RunSummary:
        """Run the full pipeline for ``period``.

        Raises:
            PolicyUnavailableError: The policy could not be loaded.
            LedgerUnavailableError: The payments store is unreachable.
        """
        try:
            period = coerce_period(period)
        except ValidationError as exc:
            logger.error("settlement_run_rejected", extra={"error": str(exc)})
            return RunSummary(
                run_id=None,
                period_code=str(period),
                status=RunStatus.NOTHING_ATTEMPTED,
                validation_errors=(str(exc),),
            )

        with LogContext.bind(period_code=period.code, actor_id=str(self._actor_id)):
            policy = self._snapshot_policy()
            run = self._start_run(period, policy)

            with LogContext.bind(run_id=str(run.id)):
                validation = validate_policy(policy)
                for warning in validation.warnings:
                    logger.warning("policy_validation_warning", extra={"warning": warning})
                if not validation.is_valid:
                    return self._reject(run, tuple(validation.errors))

                try:
                    computation = self._compute(period, policy, run_id=run.id)
                except ValidationError as exc:
                    return self._reject(run, (str(exc),))
                except PipelineError as exc:
                    self._abort(run, exc)
                    raise

                batch = build_batch(
                    computation.earnings,
                    policy,
                    computation.commissions,
                    period_code=period.code,
                )
                try:
                    self._persist_computation(run.id, computation)
                    stored = self._repository.upsert_pending(batch, run_id=run.id)
                    result = self._executor.execute(stored, run_id=run.id)
                except SQLAlchemyError as exc:
                    with self._repository.lock:
                        self._session.rollback()
                    self._abort(run, exc)
                    raise
                return self._finish(run, result, computation.issues)

    def sync_pending(self, period: SettlementPeriod | str | None = None) -> SyncSummary:
        """Reconcile in-flight payouts, then resubmit failed ones (optionally one period).

        Failed items with retry budget left go back through the executor
        under their original idempotency key; items whose budget is spent
        become ``failed_final``.
        """
        period_code = coerce_period(period).code if period is not None else None
        report = self._syncer.reconcile(self._repository.list_in_flight(period_code))

        retryable = self._repository.list_retryable(period_code)
        if not retryable:
            return report.summary

        result = self._executor.execute(retryable)
        finalized = sum(1 for f in result.failures if f.final)
        logger.info("failed_payouts_resubmitted", extra={
            "candidates": len(retryable),
            "resubmitted": len(result.succeeded),
            "finalized": finalized,
        })
        return replace(
            report.summary,
            resubmitted=len(result.succeeded),
            finalized=finalized,
        )

    def request_stop(self) -> None:
        """Stop submitting payouts; in-flight calls finish and persist.

        The stop holds for every later call until ``resume()``.
        """
        self._executor.request_stop()

    def resume(self) -> None:
        """Clear a previous ``request_stop()``."""
        self._executor.reset()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def latest_run(self, period: SettlementPeriod | str) -> SettlementRunModel | None:
        code = coerce_period(period).code
        return self._session.execute(
            select(SettlementRunModel)
            .where(SettlementRunModel.period_code == code)
            .order_by(SettlementRunModel.run_number.desc())
            .limit(1)
        ).scalar_one_or_none()

    def has_finished_run(self, period: SettlementPeriod | str) -> bool:
        code = coerce_period(period).code
        found = self._session.execute(
            select(SettlementRunModel.id)
            .where(SettlementRunModel.period_code == code)
            .where(SettlementRunModel.status.in_([s.value for s in FINISHED_RUN_STATUSES]))
            .limit(1)
        ).scalar_one_or_none()
        return found is not None

    def earnings_for_period(self, period: SettlementPeriod | str) -> list[EarningsRecord]:
        """Earnings records of the latest run that computed ``period``."""
        code = coerce_period(period).code
        run_id = self._session.execute(
            select(EarningsRecordModel.run_id)
            .join(SettlementRunModel, SettlementRunModel.id == EarningsRecordModel.run_id)
            .where(EarningsRecordModel.period_code == code)
            .order_by(SettlementRunModel.run_number.desc())
            .limit(1)
        ).scalar_one_or_none()
        if run_id is None:
            return []
        rows = self._session.execute(
            select(EarningsRecordModel)
            .where(EarningsRecordModel.run_id == run_id)
            .order_by(EarningsRecordModel.coach_id)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    # -------------------------------------------------------------------------
    # Pipeline stages
    # -------------------------------------------------------------------------

    def _snapshot_policy(self) -> FinancialPolicy:
        try:
            policy = self._policy_source()
        except SettlementError:
            raise
        except Exception as exc:
            raise PolicyUnavailableError(str(exc)) from exc
        logger.info("policy_snapshot_taken", extra={
            "policy_version": policy.version,
            "currency": policy.currency,
        })
        return policy

    def _compute(
        self, period: SettlementPeriod, policy: FinancialPolicy, run_id: UUID | None,
    ) -> _Computation:
        reader = LedgerReader(self._payments_store, policy.currency)
        earnings: list[EarningsRecord] = []
        commissions: list[CommissionLedgerEntry] = []
        issues: list[ComputationIssue] = []

        for coach_id in sorted(set(self._directory.list_settleable_coaches())):
            earnings_input = EarningsInput(
                coach_id=coach_id,
                period_code=period.code,
                gross_revenue=0,
                earnings_id=earnings_id_for(coach_id, period.code, run_id),
            )
            chain = self._directory.get_sponsor_chain(coach_id)
            try:
                gross = reader.read_revenue(coach_id, period)
                earnings_input = replace(earnings_input, gross_revenue=gross)
                record, entries = self._calculator.compute(
                    earnings_input=earnings_input,
                    sponsor_chain=chain,
                    policy=policy,
                )
            except ComputationAnomaly as exc:
                logger.warning("earnings_zeroed_by_anomaly", extra={
                    "coach_id": coach_id,
                    "error_code": exc.code,
                    "error": str(exc),
                })
                record, entries = zero_record(earnings_input, exc.code), ()
                issues.append(ComputationIssue(coach_id, exc.code, str(exc)))

            earnings.append(record)
            commissions.extend(entries)

        logger.info("settlement_computed", extra={
            "coach_count": len(earnings),
            "commission_entries": len(commissions),
            "anomalies": len(issues),
        })
        return _Computation(tuple(earnings), tuple(commissions), tuple(issues))

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _start_run(self, period: SettlementPeriod, policy: FinancialPolicy) -> SettlementRunModel:
        last_number = self._session.execute(
            select(func.max(SettlementRunModel.run_number))
            .where(SettlementRunModel.period_code == period.code)
        ).scalar_one_or_none()
        run = SettlementRunModel(
            id=uuid4(),
            period_code=period.code,
            run_number=(last_number or 0) + 1,
            status=RunStatus.RUNNING.value,
            policy_version=policy.version,
            policy_checksum=policy_checksum(policy),
            policy_snapshot=policy.snapshot(),
            started_at=self._clock.now(),
            correlation_id=LogContext.get_all().get("correlation_id"),
            created_by_id=self._actor_id,
            updated_by_id=None,
        )
        with self._repository.lock:
            self._session.add(run)
            self._session.commit()
        logger.info("settlement_run_started", extra={"run_id": str(run.id)})
        return run

    def _persist_computation(self, run_id: UUID, computation: _Computation) -> None:
        with self._repository.lock:
            try:
                self._session.add_all([
                    EarningsRecordModel.from_dto(record, run_id, self._actor_id)
                    for record in computation.earnings
                ])
                self._session.flush()
                self._session.add_all([
                    CommissionLedgerEntryModel.from_dto(entry, run_id, self._actor_id)
                    for entry in computation.commissions
                ])
                self._session.commit()
            except Exception:
                self._session.rollback()
                raise

    def _close_run(self, run: SettlementRunModel, status: RunStatus, **fields) -> None:
        with self._repository.lock:
            run.status = status.value
            run.completed_at = self._clock.now()
            run.updated_by_id = self._actor_id
            for name, value in fields.items():
                setattr(run, name, value)
            self._session.commit()

    def _reject(self, run: SettlementRunModel, errors: tuple[str, ...]) -> RunSummary:
        logger.error("settlement_run_rejected", extra={"errors": list(errors)})
        self._close_run(run, RunStatus.NOTHING_ATTEMPTED, error_summary="; ".join(errors))
        return RunSummary(
            run_id=run.id,
            period_code=run.period_code,
            status=RunStatus.NOTHING_ATTEMPTED,
            validation_errors=errors,
        )

    def _abort(self, run: SettlementRunModel, exc: Exception) -> None:
        code = exc.code if isinstance(exc, SettlementError) else type(exc).__name__
        logger.error("settlement_run_aborted", extra={
            "error_code": code,
            "error": str(exc),
        })
        self._close_run(run, RunStatus.ABORTED, error_summary=f"{code}: {exc}")

    def _finish(
        self,
        run: SettlementRunModel,
        result: BatchResult,
        issues: tuple[ComputationIssue, ...],
    ) -> RunSummary:
        status = _run_status(result, self._executor.stop_requested)
        total_completed = sum(
            item.amount for item in result.succeeded
            if item.state == PayoutState.COMPLETED
        )
        error_summary = None
        if result.failures:
            error_summary = "; ".join(
                f"{f.coach_id}: {f.error_code}" for f in result.failures
            )

        self._close_run(
            run, status,
            attempted=result.attempted,
            succeeded=len(result.succeeded),
            failed=len(result.failed),
            skipped=len(result.skipped),
            not_attempted=len(result.not_attempted),
            total_submitted=result.total_submitted,
            total_completed=total_completed,
            error_summary=error_summary,
        )

        summary = RunSummary(
            run_id=run.id,
            period_code=run.period_code,
            status=status,
            attempted=result.attempted,
            succeeded=len(result.succeeded),
            failed=len(result.failed),
            skipped=len(result.skipped),
            not_attempted=len(result.not_attempted),
            total_submitted=result.total_submitted,
            total_completed=total_completed,
            failures=result.failures,
            issues=issues,
        )
        logger.info("settlement_run_finished", extra={
            "status": status.value,
            "attempted": summary.attempted,
            "succeeded": summary.succeeded,
            "failed": summary.failed,
            "skipped": summary.skipped,
            "not_attempted": summary.not_attempted,
            "total_submitted": summary.total_submitted,
        })
        return summary


def _run_status(result: BatchResult, stopped: bool) -> RunStatus:
    if stopped and (result.not_attempted or any(not f.final for f in result.failures)):
        return RunStatus.CANCELLED
    if not result.failed:
        return RunStatus.COMPLETED
    if not result.succeeded:
        return RunStatus.FAILED
    return RunStatus.PARTIALLY_COMPLETED
