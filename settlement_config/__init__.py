"""
settlement_config -- single public entrypoint for settlement configuration.

Responsibility:
    Provides the runtime way to obtain a validated ``FinancialPolicy``:
    ``get_active_configuration()`` for one-off reads and the policy sources
    (``FilePolicySource``, ``StaticPolicySource``) the orchestrator calls
    exactly once per run to take its snapshot.

Invariants enforced:
    - Snapshot per run: a policy source is called once at run start; the
      returned frozen policy is passed by parameter for the rest of the run.
    - Administrative edits to the policy file take effect on the next call.

Failure modes:
    - ``PolicyUnavailableError`` -- the file cannot be read or parsed.
    - ``PolicyValidationError`` -- the file parsed but failed validation
      (raised by ``get_active_configuration`` only; sources return the raw
      policy and leave validation to the run).

Audit relevance:
    Every load emits a ``SETTLEMENT_CONFIG_TRACE`` log entry with the policy
    version and checksum; the checksum is stored on each settlement run.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable

import yaml

from settlement_config.loader import load_configuration_file
from settlement_config.schema import (
    RANK_ORDER,
    CommissionTier,
    ExecutionSettings,
    FinancialPolicy,
    PayoutFrequency,
    SettlementConfiguration,
)
from settlement_config.validator import require_valid_policy, validate_execution_settings
from settlement_kernel.exceptions import PolicyUnavailableError, PolicyValidationError

_logger = logging.getLogger("settlement.config")

POLICY_PATH_ENV = "SETTLEMENT_POLICY_PATH"

_DEFAULT_POLICY_FILE = Path(__file__).parent / "policies" / "default.yaml"

PolicySource = Callable[[], FinancialPolicy]


def resolve_policy_path(path: Path | str | None = None) -> Path:
    """Explicit path, then ``SETTLEMENT_POLICY_PATH``, then the bundled default."""
    if path is not None:
        return Path(path)
    env_path = os.environ.get(POLICY_PATH_ENV)
    if env_path:
        return Path(env_path)
    return _DEFAULT_POLICY_FILE


def _load(path: Path) -> SettlementConfiguration:
    try:
        config = load_configuration_file(path)
    except (OSError, yaml.YAMLError, KeyError, ValueError) as exc:
        raise PolicyUnavailableError(f"{path}: {exc}") from exc

    _logger.info(
        "SETTLEMENT_CONFIG_TRACE",
        extra={
            "trace_type": "SETTLEMENT_CONFIG_TRACE",
            "path": str(path),
            "policy_version": config.policy.version,
            "checksum": config.checksum,
        },
    )
    return config


def get_active_configuration(path: Path | str | None = None) -> SettlementConfiguration:
    """Load and validate the active configuration.

    Raises:
        PolicyUnavailableError: If the file cannot be read or parsed.
        PolicyValidationError: If the policy is invalid.
    """
    config = _load(resolve_policy_path(path))
    require_valid_policy(config.policy)
    return config


class FilePolicySource:
    """Reads the policy file on every call so edits apply to the next run."""

    def __init__(self, path: Path | str | None = None):
        self._path = resolve_policy_path(path)

    @property
    def path(self) -> Path:
        return self._path

    def __call__(self) -> FinancialPolicy:
        return _load(self._path).policy

    def execution_settings(self) -> ExecutionSettings:
        """Payout tuning from the same file.

        Raises:
            PolicyUnavailableError: If the file cannot be read or parsed.
            PolicyValidationError: If the settings are out of range.
        """
        settings = _load(self._path).execution
        result = validate_execution_settings(settings)
        if not result.is_valid:
            raise PolicyValidationError(result.errors)
        return settings


class StaticPolicySource:
    """Always returns the same policy (tests, embedded callers)."""

    def __init__(self, policy: FinancialPolicy):
        self._policy = policy

    def __call__(self) -> FinancialPolicy:
        return self._policy


__all__ = [
    "POLICY_PATH_ENV",
    "RANK_ORDER",
    "CommissionTier",
    "ExecutionSettings",
    "FilePolicySource",
    "FinancialPolicy",
    "PayoutFrequency",
    "PolicySource",
    "SettlementConfiguration",
    "StaticPolicySource",
    "get_active_configuration",
    "resolve_policy_path",
]
