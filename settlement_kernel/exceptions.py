"""
Typed Exception Hierarchy for the Settlement Engine.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Payout code has to decide, per error, whether to retry, give up on one coach,
or abort the whole run. Parsing messages for that is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        gateway.submit_payout(...)
    except TransientGatewayError as e:     # retry with backoff
        ...
    except PermanentGatewayError as e:     # failed_final, record e.code
        ...

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    SettlementError (base)
    |
    +-- ValidationError                  -- whole run fails, nothing attempted
    |   +-- PolicyValidationError
    |   +-- MissingSponsorChainError
    |   +-- SponsorChainCycleError
    |   +-- InvalidPeriodError
    |
    +-- GatewayError
    |   +-- TransientGatewayError        -- retried with backoff
    |   |   +-- GatewayTimeoutError
    |   |   +-- GatewayRateLimitError
    |   |   +-- GatewayUnavailableError
    |   +-- PermanentGatewayError        -- failed_final immediately
    |       +-- InvalidDestinationError
    |       +-- InsufficientPlatformBalanceError
    |       +-- ComplianceBlockError
    |       +-- GatewayAuthenticationError
    |
    +-- ComputationAnomaly               -- one coach zeroed, run continues
    |   +-- AmountOverflowError
    |   +-- CurrencyMismatchAnomaly
    |
    +-- PipelineError                    -- whole run aborts
    |   +-- PolicyUnavailableError
    |   +-- LedgerUnavailableError
    |
    +-- PayoutStateError
    |   +-- InvalidPayoutTransitionError
    |   +-- PayoutItemNotFoundError
    |
    +-- AuditChainBrokenError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                          | When Raised
-------------|-------------------------------|---------------------------------
Validation   | POLICY_INVALID                | Policy failed validation
             | SPONSOR_CHAIN_MISSING         | Sponsor reference cannot be resolved
             | SPONSOR_CHAIN_CYCLE           | Sponsor chain loops back on itself
             | INVALID_PERIOD                | Period code cannot be parsed
-------------|-------------------------------|---------------------------------
Gateway      | GATEWAY_TIMEOUT               | Call exceeded its timeout
             | GATEWAY_RATE_LIMITED          | Gateway throttled the request
             | GATEWAY_UNAVAILABLE           | 5xx / connection failure
             | INVALID_DESTINATION           | Beneficiary account rejected
             | INSUFFICIENT_PLATFORM_BALANCE | Platform account cannot fund payout
             | COMPLIANCE_BLOCK              | Payout blocked by compliance
             | GATEWAY_AUTH_FAILED           | Credentials rejected
-------------|-------------------------------|---------------------------------
Computation  | AMOUNT_OVERFLOW               | Amount outside the safe range
             | CURRENCY_MISMATCH             | Payment not in settlement currency
-------------|-------------------------------|---------------------------------
Pipeline     | POLICY_UNAVAILABLE            | Policy could not be loaded
             | LEDGER_UNAVAILABLE            | Payments store unreachable
-------------|-------------------------------|---------------------------------
Payout state | INVALID_PAYOUT_TRANSITION     | State machine forbids the move
             | PAYOUT_ITEM_NOT_FOUND         | No item for idempotency key
-------------|-------------------------------|---------------------------------
Audit        | AUDIT_CHAIN_BROKEN            | Stored hash does not match chain
"""


class SettlementError(Exception):
    """
    Base exception for all settlement errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "SETTLEMENT_ERROR"


# Validation errors


class ValidationError(SettlementError):
    """Configuration or input problem detected before any gateway call."""

    code: str = "VALIDATION_ERROR"


class PolicyValidationError(ValidationError):
    """FinancialPolicy failed validation."""

    code: str = "POLICY_INVALID"

    def __init__(self, errors: list[str] | tuple[str, ...]):
        self.errors = tuple(errors)
        super().__init__(
            "Financial policy is invalid: " + "; ".join(self.errors)
        )


class MissingSponsorChainError(ValidationError):
    """A coach's sponsor chain references a coach that does not exist."""

    code: str = "SPONSOR_CHAIN_MISSING"

    def __init__(self, coach_id: str, missing_sponsor_id: str | None = None):
        self.coach_id = coach_id
        self.missing_sponsor_id = missing_sponsor_id
        detail = (
            f" (sponsor {missing_sponsor_id} not found)"
            if missing_sponsor_id
            else ""
        )
        super().__init__(f"Sponsor chain unavailable for coach {coach_id}{detail}")


class SponsorChainCycleError(ValidationError):
    """Walking up the sponsor chain revisited a coach."""

    code: str = "SPONSOR_CHAIN_CYCLE"

    def __init__(self, coach_id: str, path: list[str]):
        self.coach_id = coach_id
        self.path = path
        super().__init__(
            f"Sponsor chain for coach {coach_id} contains a cycle: "
            + " -> ".join(path)
        )


class InvalidPeriodError(ValidationError):
    """Settlement period code cannot be parsed."""

    code: str = "INVALID_PERIOD"

    def __init__(self, period_code: str, reason: str):
        self.period_code = period_code
        self.reason = reason
        super().__init__(f"Invalid settlement period {period_code!r}: {reason}")


# Gateway errors


class GatewayError(SettlementError):
    """Base exception for money-movement gateway failures."""

    code: str = "GATEWAY_ERROR"

    def __init__(self, message: str, detail: str | None = None):
        self.detail = detail
        super().__init__(message)


class TransientGatewayError(GatewayError):
    """Failure that may succeed on retry with the same idempotency key."""

    code: str = "GATEWAY_TRANSIENT"


class GatewayTimeoutError(TransientGatewayError):
    code: str = "GATEWAY_TIMEOUT"


class GatewayRateLimitError(TransientGatewayError):
    code: str = "GATEWAY_RATE_LIMITED"


class GatewayUnavailableError(TransientGatewayError):
    code: str = "GATEWAY_UNAVAILABLE"


class PermanentGatewayError(GatewayError):
    """Failure that will not succeed on retry."""

    code: str = "GATEWAY_PERMANENT"


class InvalidDestinationError(PermanentGatewayError):
    code: str = "INVALID_DESTINATION"


class InsufficientPlatformBalanceError(PermanentGatewayError):
    code: str = "INSUFFICIENT_PLATFORM_BALANCE"


class ComplianceBlockError(PermanentGatewayError):
    code: str = "COMPLIANCE_BLOCK"


class GatewayAuthenticationError(PermanentGatewayError):
    code: str = "GATEWAY_AUTH_FAILED"


# Computation anomalies


class ComputationAnomaly(SettlementError):
    """
    One coach's figures are unusable.

    The orchestrator zeroes that coach's EarningsRecord and continues the run.
    """

    code: str = "COMPUTATION_ANOMALY"

    def __init__(self, coach_id: str, message: str):
        self.coach_id = coach_id
        super().__init__(message)


class AmountOverflowError(ComputationAnomaly):
    code: str = "AMOUNT_OVERFLOW"

    def __init__(self, coach_id: str, amount: int, ceiling: int):
        self.amount = amount
        self.ceiling = ceiling
        super().__init__(
            coach_id,
            f"Amount {amount} for coach {coach_id} exceeds ceiling {ceiling}",
        )


class CurrencyMismatchAnomaly(ComputationAnomaly):
    code: str = "CURRENCY_MISMATCH"

    def __init__(self, coach_id: str, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            coach_id,
            f"Payment for coach {coach_id} in {actual}, settlement currency is {expected}",
        )


# Pipeline errors


class PipelineError(SettlementError):
    """A failure that makes the whole run impossible."""

    code: str = "PIPELINE_ERROR"


class PolicyUnavailableError(PipelineError):
    code: str = "POLICY_UNAVAILABLE"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Financial policy could not be loaded: {reason}")


class LedgerUnavailableError(PipelineError):
    code: str = "LEDGER_UNAVAILABLE"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Payments store is unreachable: {reason}")


# Payout state errors


class PayoutStateError(SettlementError):
    code: str = "PAYOUT_STATE_ERROR"


class InvalidPayoutTransitionError(PayoutStateError):
    """The payout state machine does not allow this transition."""

    code: str = "INVALID_PAYOUT_TRANSITION"

    def __init__(self, idempotency_key: str, from_state: str, to_state: str):
        self.idempotency_key = idempotency_key
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Payout {idempotency_key}: cannot move from {from_state} to {to_state}"
        )


class PayoutItemNotFoundError(PayoutStateError):
    code: str = "PAYOUT_ITEM_NOT_FOUND"

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(f"No payout item for idempotency key {idempotency_key}")


# Audit errors


class AuditChainBrokenError(SettlementError):
    """A payout audit entry does not match its recomputed hash link."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, idempotency_key: str, seq: int, reason: str):
        self.idempotency_key = idempotency_key
        self.seq = seq
        self.reason = reason
        super().__init__(
            f"Audit chain for payout {idempotency_key} broken at seq {seq}: {reason}"
        )
