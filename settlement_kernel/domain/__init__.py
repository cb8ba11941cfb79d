"""
Pure domain layer.

Value helpers with NO dependencies on the ORM, the database, or I/O.
The only sanctioned time source is an injected Clock.
"""

from settlement_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from settlement_kernel.domain.money import (
    BPS_DENOMINATOR,
    MAX_MINOR_AMOUNT,
    apply_bps,
    floor_to_minor,
    percent_to_bps,
    round_half_up_to_minor,
)
from settlement_kernel.domain.payout import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    PayoutBatchItem,
    PayoutState,
    can_transition,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "BPS_DENOMINATOR",
    "Clock",
    "DeterministicClock",
    "MAX_MINOR_AMOUNT",
    "PayoutBatchItem",
    "PayoutState",
    "SystemClock",
    "TERMINAL_STATES",
    "apply_bps",
    "can_transition",
    "floor_to_minor",
    "percent_to_bps",
    "round_half_up_to_minor",
]
