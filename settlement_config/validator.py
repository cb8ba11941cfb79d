"""
Policy Validator (``settlement_config.validator``).

Responsibility
--------------
Validates a ``FinancialPolicy`` (and the payout ``ExecutionSettings``) before
any computation runs.  Errors block the run; warnings are logged and the run
proceeds.

Failure modes
-------------
* ``require_valid_policy`` raises ``PolicyValidationError`` carrying every
  error found, so the caller can report them all at once.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from settlement_config.schema import RANK_ORDER, ExecutionSettings, FinancialPolicy
from settlement_kernel.domain.money import BPS_DENOMINATOR
from settlement_kernel.exceptions import PolicyValidationError
from settlement_kernel.logging_config import get_logger

logger = get_logger("config.validator")

MAX_COMMISSION_LEVELS = 20

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


@dataclass
class PolicyValidationResult:
    """
    Result of policy validation.

    ``is_valid`` is True only when ``errors`` is empty.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_policy(policy: FinancialPolicy) -> PolicyValidationResult:
    """Run every policy check and collect errors and warnings."""
    result = PolicyValidationResult()

    _validate_rate(result, "platform_fee_bps", policy.platform_fee_bps)
    _validate_rate(result, "tax_rate_bps", policy.tax_rate_bps)
    _validate_amount(result, "minimum_fee", policy.minimum_fee)
    _validate_amount(result, "minimum_payout_amount", policy.minimum_payout_amount)
    if policy.commission_cap is not None:
        _validate_amount(result, "commission_cap", policy.commission_cap)

    if not _CURRENCY_RE.match(policy.currency):
        result.errors.append(
            f"currency must be a three-letter ISO 4217 code, got {policy.currency!r}"
        )

    if not 0 <= policy.max_commission_levels <= MAX_COMMISSION_LEVELS:
        result.errors.append(
            f"max_commission_levels must be between 0 and {MAX_COMMISSION_LEVELS}, "
            f"got {policy.max_commission_levels}"
        )

    _validate_commission_table(result, policy)
    return result


def _validate_rate(result: PolicyValidationResult, name: str, bps: int) -> None:
    if not 0 <= bps <= BPS_DENOMINATOR:
        result.errors.append(f"{name} must be between 0 and {BPS_DENOMINATOR}, got {bps}")


def _validate_amount(result: PolicyValidationResult, name: str, amount: int) -> None:
    if amount < 0:
        result.errors.append(f"{name} must not be negative, got {amount}")


def _validate_commission_table(
    result: PolicyValidationResult, policy: FinancialPolicy,
) -> None:
    table = policy.commission_table
    ranks = [tier.rank for tier in table]

    duplicates = sorted({r for r in ranks if ranks.count(r) > 1})
    if duplicates:
        result.errors.append(f"commission_table has duplicate ranks: {duplicates}")

    for tier in table:
        if not tier.rank:
            result.errors.append("commission_table has an empty rank name")
        _validate_rate(result, f"commission rate for {tier.rank!r}", tier.rate_bps)
        if tier.rank and tier.rank not in RANK_ORDER:
            result.warnings.append(f"commission rank {tier.rank!r} is not a known tier")

    if policy.max_commission_levels > 0 and not table:
        result.errors.append(
            "commission_table is empty but max_commission_levels is "
            f"{policy.max_commission_levels}"
        )

    known = [tier for tier in table if tier.rank in RANK_ORDER]
    for lower, higher in zip(known, known[1:]):
        if higher.rate_bps < lower.rate_bps:
            result.warnings.append(
                f"rank {higher.rank!r} earns less than {lower.rank!r}"
            )

    if table:
        worst_case = max(t.rate_bps for t in table) * policy.max_commission_levels
        if worst_case > BPS_DENOMINATOR:
            result.warnings.append(
                "commission rates can exceed 100% of the distributable amount; "
                "deeper levels will be clipped"
            )


def validate_execution_settings(settings: ExecutionSettings) -> PolicyValidationResult:
    result = PolicyValidationResult()
    if settings.fan_out < 1:
        result.errors.append(f"fan_out must be at least 1, got {settings.fan_out}")
    if settings.max_attempts < 1:
        result.errors.append(
            f"max_attempts must be at least 1, got {settings.max_attempts}"
        )
    if settings.backoff_base_seconds < 0 or settings.backoff_max_seconds < 0:
        result.errors.append("backoff delays must not be negative")
    if settings.gateway_timeout_seconds <= 0:
        result.errors.append("gateway_timeout_seconds must be positive")
    return result


def require_valid_policy(policy: FinancialPolicy) -> FinancialPolicy:
    """Validate and return ``policy``.

    Raises:
        PolicyValidationError: If any error was found.
    """
    result = validate_policy(policy)
    for warning in result.warnings:
        logger.warning(
            "policy_validation_warning",
            extra={"warning": warning, "policy_version": policy.version},
        )
    if not result.is_valid:
        logger.error(
            "policy_validation_failed",
            extra={"errors": result.errors, "policy_version": policy.version},
        )
        raise PolicyValidationError(result.errors)
    return policy
