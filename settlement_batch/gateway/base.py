"""
PayoutGateway protocol and status vocabulary.

Contract:
    ``submit_payout`` moves money at most once per idempotency key: the
    gateway de-duplicates repeated submissions carrying the same key.  It
    returns the gateway's reference and initial status, or raises a
    ``TransientGatewayError`` / ``PermanentGatewayError``.

    ``query_status`` maps the gateway's own status onto three values;
    transient query failures raise ``TransientGatewayError``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable


class GatewayStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class GatewaySubmission:
    gateway_ref: str
    status: GatewayStatus = GatewayStatus.PROCESSING
    detail: str | None = None


@runtime_checkable
class PayoutGateway(Protocol):
    def submit_payout(
        self, idempotency_key: str, coach_id: str, amount: int, currency: str,
    ) -> GatewaySubmission:
        ...

    def query_status(self, gateway_ref: str) -> GatewayStatus:
        ...
