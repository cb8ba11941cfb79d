"""
RazorpayX payouts adapter.

Contract:
    Implements ``PayoutGateway`` over the RazorpayX REST API with an
    ``httpx.Client``.  Every submission carries the payout idempotency key
    in the ``X-Payout-Idempotency`` header, so a retried request returns the
    original payout instead of creating a second one.

Failure mapping:
    timeout                           -> GatewayTimeoutError
    connection error, 5xx             -> GatewayUnavailableError
    429                               -> GatewayRateLimitError
    401 / 403                         -> GatewayAuthenticationError
    4xx mentioning balance            -> InsufficientPlatformBalanceError
    4xx mentioning compliance / block -> ComplianceBlockError
    other 4xx, unknown destination    -> InvalidDestinationError
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx

from settlement_batch.gateway.base import GatewayStatus, GatewaySubmission
from settlement_kernel.exceptions import (
    ComplianceBlockError,
    GatewayAuthenticationError,
    GatewayError,
    GatewayRateLimitError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    InsufficientPlatformBalanceError,
    InvalidDestinationError,
)
from settlement_kernel.logging_config import get_logger

logger = get_logger("batch.gateway.razorpayx")

DEFAULT_BASE_URL = "https://api.razorpay.com/v1"
NARRATION_MAX_LENGTH = 30

STATUS_MAP: dict[str, GatewayStatus] = {
    "queued": GatewayStatus.PROCESSING,
    "pending": GatewayStatus.PROCESSING,
    "processing": GatewayStatus.PROCESSING,
    "scheduled": GatewayStatus.PROCESSING,
    "processed": GatewayStatus.COMPLETED,
    "reversed": GatewayStatus.FAILED,
    "cancelled": GatewayStatus.FAILED,
    "rejected": GatewayStatus.FAILED,
    "failed": GatewayStatus.FAILED,
}

FundAccountResolver = Callable[[str], str | None]


def map_status(raw: str | None) -> GatewayStatus:
    """Razorpay payout status -> GatewayStatus; unknown values stay processing."""
    if raw is None:
        return GatewayStatus.PROCESSING
    status = STATUS_MAP.get(raw.lower())
    if status is None:
        logger.warning("razorpayx_unknown_status", extra={"status": raw})
        return GatewayStatus.PROCESSING
    return status


def build_narration(coach_id: str, prefix: str = "Coach payout") -> str:
    # RazorpayX rejects narrations over 30 characters.
    return f"{prefix} {coach_id}"[:NARRATION_MAX_LENGTH]


class RazorpayXGateway:
    def __init__(
        self,
        key_id: str,
        key_secret: str,
        account_number: str,
        fund_account_resolver: FundAccountResolver,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        mode: str = "IMPS",
        client: httpx.Client | None = None,
    ):
        self._account_number = account_number
        self._resolve_fund_account = fund_account_resolver
        self._mode = mode
        self._client = client or httpx.Client(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=timeout,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> RazorpayXGateway:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def submit_payout(
        self, idempotency_key: str, coach_id: str, amount: int, currency: str,
    ) -> GatewaySubmission:
        fund_account_id = self._resolve_fund_account(coach_id)
        if not fund_account_id:
            raise InvalidDestinationError(
                f"No fund account registered for coach {coach_id}",
            )

        body = {
            "account_number": self._account_number,
            "fund_account_id": fund_account_id,
            "amount": amount,
            "currency": currency,
            "mode": self._mode,
            "purpose": "payout",
            "queue_if_low_balance": False,
            "reference_id": idempotency_key,
            "narration": build_narration(coach_id),
            "notes": {"coach_id": coach_id},
        }
        data = self._request(
            "POST", "/payouts",
            json=body,
            headers={"X-Payout-Idempotency": idempotency_key},
        )

        gateway_ref = data.get("id")
        if not gateway_ref:
            raise GatewayUnavailableError("RazorpayX response carried no payout id")

        status = map_status(data.get("status"))
        logger.info("razorpayx_payout_created", extra={
            "idempotency_key": idempotency_key,
            "coach_id": coach_id,
            "gateway_ref": gateway_ref,
            "gateway_status": data.get("status"),
        })
        return GatewaySubmission(
            gateway_ref=gateway_ref,
            status=status,
            detail=_failure_reason(data),
        )

    def query_status(self, gateway_ref: str) -> GatewayStatus:
        data = self._request("GET", f"/payouts/{gateway_ref}")
        return map_status(data.get("status"))

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayTimeoutError("RazorpayX request timed out", detail=str(exc)) from exc
        except httpx.TransportError as exc:
            raise GatewayUnavailableError(
                "RazorpayX is unreachable", detail=str(exc),
            ) from exc

        if response.status_code >= 400:
            raise _error_for(response)
        return response.json()


def _failure_reason(data: dict[str, Any]) -> str | None:
    details = data.get("status_details") or {}
    return details.get("description") or data.get("failure_reason")


def _error_for(response: httpx.Response) -> GatewayError:
    try:
        error = response.json().get("error") or {}
    except ValueError:
        error = {}
    description = error.get("description") or response.text or response.reason_phrase
    code = error.get("code")
    detail = f"{code}: {description}" if code else description
    status = response.status_code

    logger.warning("razorpayx_error_response", extra={
        "http_status": status,
        "error_code": code,
        "description": description,
    })

    if status == 429:
        return GatewayRateLimitError("RazorpayX rate limit reached", detail=detail)
    if status >= 500:
        return GatewayUnavailableError(f"RazorpayX returned {status}", detail=detail)
    if status in (401, 403):
        return GatewayAuthenticationError("RazorpayX rejected the credentials", detail=detail)

    text = (description or "").lower()
    if "balance" in text:
        return InsufficientPlatformBalanceError(
            "Platform account balance is insufficient", detail=detail,
        )
    if "compliance" in text or "blocked" in text:
        return ComplianceBlockError("Payout blocked by compliance checks", detail=detail)
    return InvalidDestinationError("RazorpayX rejected the payout", detail=detail)
