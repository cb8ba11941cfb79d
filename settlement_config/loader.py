"""
Configuration Loader (``settlement_config.loader``).

Responsibility
--------------
Loads a YAML policy file and parses it into the frozen dataclasses of
``settlement_config.schema``.  Percentages are written as percent strings in
YAML (``"10"``, ``"0.05"``) and converted to integer basis points here.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Non-numeric or sub-basis-point percentages  -> ``ValueError``.

Callers that need a single pipeline-level error wrap these in
``PolicyUnavailableError`` (see ``settlement_config.FilePolicySource``).
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from settlement_config.schema import (
    RANK_ORDER,
    CommissionTier,
    ExecutionSettings,
    FinancialPolicy,
    PayoutFrequency,
    SettlementConfiguration,
)
from settlement_kernel.domain.money import percent_to_bps
from settlement_kernel.utils.hashing import hash_payload


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _parse_amount(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer amount in minor units, got {value!r}")
    return value


def parse_commission_table(data: dict[str, Any]) -> tuple[CommissionTier, ...]:
    """Parse ``{rank: percent}`` into tiers ordered bronze..diamond.

    Ranks outside the known ladder keep their file order after the known ones.
    """
    tiers = [
        CommissionTier(rank=str(rank).strip().lower(), rate_bps=percent_to_bps(pct))
        for rank, pct in data.items()
    ]

    def order(tier: CommissionTier) -> int:
        try:
            return RANK_ORDER.index(tier.rank)
        except ValueError:
            return len(RANK_ORDER)

    return tuple(sorted(tiers, key=order))


def parse_policy(data: dict[str, Any]) -> FinancialPolicy:
    """
    Parse a ``FinancialPolicy`` from the ``policy`` section of a config file.

    Raises:
        KeyError: if required keys are missing.
        ValueError: if a value has the wrong shape.
    """
    cap = data.get("commission_cap")
    return FinancialPolicy(
        platform_fee_bps=percent_to_bps(data["platform_fee_percent"]),
        minimum_fee=_parse_amount(data.get("minimum_fee", 0), "minimum_fee"),
        tax_rate_bps=percent_to_bps(data.get("tax_rate_percent", 0)),
        commission_table=parse_commission_table(data.get("commission_table") or {}),
        max_commission_levels=int(data["max_commission_levels"]),
        commission_cap=None if cap is None else _parse_amount(cap, "commission_cap"),
        minimum_payout_amount=_parse_amount(
            data["minimum_payout_amount"], "minimum_payout_amount",
        ),
        payout_frequency=PayoutFrequency(data.get("payout_frequency", "monthly")),
        currency=str(data.get("currency", "INR")).strip().upper(),
        version=str(data.get("version", "1")),
    )


def parse_execution(data: dict[str, Any]) -> ExecutionSettings:
    """Parse the optional ``execution`` section; absent keys keep defaults."""
    defaults = ExecutionSettings()
    return ExecutionSettings(
        fan_out=int(data.get("fan_out", defaults.fan_out)),
        max_attempts=int(data.get("max_attempts", defaults.max_attempts)),
        backoff_base_seconds=float(
            data.get("backoff_base_seconds", defaults.backoff_base_seconds)
        ),
        backoff_max_seconds=float(
            data.get("backoff_max_seconds", defaults.backoff_max_seconds)
        ),
        gateway_timeout_seconds=float(
            data.get("gateway_timeout_seconds", defaults.gateway_timeout_seconds)
        ),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """Deterministic SHA-256 of the raw configuration mapping."""
    return hash_payload(data)


def parse_configuration(data: dict[str, Any]) -> SettlementConfiguration:
    """Parse a whole configuration mapping (``policy`` + ``execution``)."""
    return SettlementConfiguration(
        policy=parse_policy(data["policy"]),
        execution=parse_execution(data.get("execution") or {}),
        checksum=compute_checksum(data),
    )


def load_configuration_file(path: Path | str) -> SettlementConfiguration:
    return parse_configuration(load_yaml_file(Path(path)))


def load_policy_file(path: Path | str) -> FinancialPolicy:
    return load_configuration_file(path).policy
