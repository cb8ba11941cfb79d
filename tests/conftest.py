"""
Pytest fixtures for the settlement engine test suite.

Provides:
- In-memory SQLite sessions with every settlement table created
- A deterministic clock and a default financial policy
- Scriptable fakes for the payments store, coach directory and payout gateway
- Structured-log capture

The SQLite engine uses a StaticPool with ``check_same_thread=False`` so the
payout executor's worker threads can share the test connection.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from io import StringIO
from uuid import UUID

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import settlement_batch.models  # noqa: F401  (registers every table)
from settlement_batch.domain.period import SettlementPeriod
from settlement_batch.gateway.base import GatewayStatus, GatewaySubmission
from settlement_batch.services.sources import ConfirmedPayment
from settlement_config.schema import (
    CommissionTier,
    ExecutionSettings,
    FinancialPolicy,
    PayoutFrequency,
)
from settlement_engines.commission import SponsorLink
from settlement_kernel.db.base import Base
from settlement_kernel.domain.clock import DeterministicClock
from settlement_kernel.exceptions import (
    GatewayError,
    LedgerUnavailableError,
    MissingSponsorChainError,
    SponsorChainCycleError,
)
from settlement_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
)

TEST_ACTOR_ID = UUID("00000000-0000-0000-0000-0000000000a1")

# 2024-02-10 12:00 UTC: January 2024 is the most recently closed month.
TEST_NOW = datetime(2024, 2, 10, 12, 0, 0, tzinfo=timezone.utc)
JANUARY = SettlementPeriod.parse("2024-01")


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Enable structured JSON logging for the test session."""
    configure_logging(level=logging.DEBUG)


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Ensure LogContext is clean before and after each test."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture structured log records emitted during a test.

    Returns a callable that parses every JSON line written so far.

    Usage:
        def test_something(captured_logs):
            ...
            records = captured_logs()
            assert any(r["message"] == "payout_state_changed" for r in records)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("settlement")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine():
    """In-memory SQLite engine with every settlement table."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# =============================================================================
# Clock, policy, settings
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock(TEST_NOW)


def make_policy(**overrides) -> FinancialPolicy:
    """Policy used across the suite: 10% fee, 5% tax, three commission tiers."""
    values = dict(
        platform_fee_bps=1000,
        minimum_fee=0,
        tax_rate_bps=500,
        commission_table=(
            CommissionTier("bronze", 200),
            CommissionTier("silver", 500),
            CommissionTier("gold", 1000),
        ),
        max_commission_levels=3,
        commission_cap=None,
        minimum_payout_amount=1000,
        payout_frequency=PayoutFrequency.MONTHLY,
        currency="INR",
        version="test-1",
    )
    values.update(overrides)
    return FinancialPolicy(**values)


@pytest.fixture
def policy():
    return make_policy()


@pytest.fixture
def fast_settings():
    """No real waiting: zero backoff, three attempts, two workers."""
    return ExecutionSettings(
        fan_out=2,
        max_attempts=3,
        backoff_base_seconds=0.0,
        backoff_max_seconds=0.0,
    )


def no_sleep(seconds: float) -> None:
    return None


# =============================================================================
# Fakes
# =============================================================================


class FakePaymentsStore:
    """In-memory PaymentsStore keyed by coach."""

    def __init__(self):
        self.payments: dict[str, list[ConfirmedPayment]] = {}
        self.unavailable = False
        self.calls: list[str] = []

    def add(
        self,
        coach_id: str,
        amount: int,
        when: datetime = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc),
        currency: str = "INR",
    ) -> None:
        self.payments.setdefault(coach_id, []).append(
            ConfirmedPayment(amount=amount, currency=currency, timestamp=when)
        )

    def get_confirmed_payments(self, coach_id, period_start, period_end):
        self.calls.append(coach_id)
        if self.unavailable:
            raise LedgerUnavailableError("payments database offline")
        return [
            p for p in self.payments.get(coach_id, [])
            if period_start <= p.timestamp < period_end
        ]


class FakeDirectory:
    """In-memory CoachDirectory: coach -> (sponsor, current rank)."""

    def __init__(self):
        self.coaches: dict[str, tuple[str | None, str | None, bool]] = {}

    def add(
        self,
        coach_id: str,
        sponsor_id: str | None = None,
        rank: str | None = None,
        active: bool = True,
    ) -> None:
        self.coaches[coach_id] = (sponsor_id, rank, active)

    def list_settleable_coaches(self) -> list[str]:
        return [c for c, (_, _, active) in self.coaches.items() if active]

    def get_sponsor_chain(self, coach_id: str) -> list[SponsorLink]:
        if coach_id not in self.coaches:
            raise MissingSponsorChainError(coach_id)
        chain: list[SponsorLink] = []
        path = [coach_id]
        sponsor_id = self.coaches[coach_id][0]
        while sponsor_id:
            if sponsor_id in path:
                raise SponsorChainCycleError(coach_id, path + [sponsor_id])
            if sponsor_id not in self.coaches:
                raise MissingSponsorChainError(coach_id, sponsor_id)
            next_sponsor, rank, _ = self.coaches[sponsor_id]
            chain.append(SponsorLink(coach_id=sponsor_id, rank=rank))
            path.append(sponsor_id)
            sponsor_id = next_sponsor
        return chain


class FakeGateway:
    """
    Scriptable, thread-safe PayoutGateway.

    ``script(coach_id, *outcomes)`` queues what successive submissions for a
    coach return: a GatewayStatus for an accepted payout, or an exception to
    raise.  Unscripted submissions are accepted as ``processing``.  The same
    idempotency key always maps to the same gateway reference.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._scripts: dict[str, list] = {}
        self._refs: dict[str, str] = {}
        self.statuses: dict[str, GatewayStatus] = {}
        self.query_errors: dict[str, GatewayError] = {}
        self.submissions: list[tuple[str, str, int, str]] = []
        self.queries: list[str] = []
        self.on_submit = None

    def script(self, coach_id: str, *outcomes) -> None:
        self._scripts.setdefault(coach_id, []).extend(outcomes)

    def ref_for(self, idempotency_key: str) -> str | None:
        return self._refs.get(idempotency_key)

    def set_status(self, gateway_ref: str, status: GatewayStatus) -> None:
        with self._lock:
            self.statuses[gateway_ref] = status

    def submitted_coaches(self) -> list[str]:
        return [coach_id for _, coach_id, _, _ in self.submissions]

    def submit_payout(self, idempotency_key, coach_id, amount, currency):
        with self._lock:
            self.submissions.append((idempotency_key, coach_id, amount, currency))
            queued = self._scripts.get(coach_id)
            outcome = queued.pop(0) if queued else GatewayStatus.PROCESSING

        if self.on_submit is not None:
            self.on_submit(coach_id)
        if isinstance(outcome, Exception):
            raise outcome

        with self._lock:
            ref = self._refs.get(idempotency_key)
            if ref is None:
                ref = f"pout_{len(self._refs) + 1:04d}"
                self._refs[idempotency_key] = ref
            self.statuses[ref] = outcome
        return GatewaySubmission(gateway_ref=ref, status=outcome)

    def query_status(self, gateway_ref):
        with self._lock:
            self.queries.append(gateway_ref)
            error = self.query_errors.get(gateway_ref)
            status = self.statuses.get(gateway_ref, GatewayStatus.PROCESSING)
        if error is not None:
            raise error
        return status


@pytest.fixture
def payments():
    return FakePaymentsStore()


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def gateway():
    return FakeGateway()
