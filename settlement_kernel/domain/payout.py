"""
Payout item value type and state machine.

    pending -> submitted -> completed
                         -> failed -> submitted   (retry)
                                   -> failed_final
                         -> failed_final          (permanent error)
    submitted -> submitted                        (orphan re-submission)

``completed`` and ``failed_final`` are terminal.  The orphan re-submission
edge covers an item whose ``submitted`` state was committed but whose gateway
call never returned a reference; the gateway de-duplicates the repeat by
idempotency key.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum


class PayoutState(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    COMPLETED = "completed"
    FAILED = "failed"
    FAILED_FINAL = "failed_final"


TERMINAL_STATES: frozenset[PayoutState] = frozenset(
    {PayoutState.COMPLETED, PayoutState.FAILED_FINAL}
)

ALLOWED_TRANSITIONS: dict[PayoutState, frozenset[PayoutState]] = {
    PayoutState.PENDING: frozenset({PayoutState.SUBMITTED}),
    PayoutState.SUBMITTED: frozenset({
        PayoutState.SUBMITTED,
        PayoutState.COMPLETED,
        PayoutState.FAILED,
        PayoutState.FAILED_FINAL,
    }),
    PayoutState.FAILED: frozenset({PayoutState.SUBMITTED, PayoutState.FAILED_FINAL}),
    PayoutState.COMPLETED: frozenset(),
    PayoutState.FAILED_FINAL: frozenset(),
}


def can_transition(from_state: PayoutState, to_state: PayoutState) -> bool:
    return to_state in ALLOWED_TRANSITIONS[from_state]


@dataclass(frozen=True)
class PayoutBatchItem:
    """
    One coach's payout for one settlement period.

    ``idempotency_key`` is None in dry-run previews; live items carry the
    deterministic key derived from (coach_id, period_code).
    """

    coach_id: str
    amount: int  # minor units
    currency: str
    idempotency_key: str | None
    state: PayoutState = PayoutState.PENDING
    period_code: str | None = None
    attempt_count: int = 0
    gateway_ref: str | None = None
    last_error_code: str | None = None
    last_error_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_in_flight(self) -> bool:
        """Accepted by the gateway and awaiting a terminal status."""
        return self.state == PayoutState.SUBMITTED and self.gateway_ref is not None

    def with_state(self, state: PayoutState, **changes) -> PayoutBatchItem:
        return replace(self, state=state, **changes)
