"""
Tests for the RazorpayX payout adapter.

Uses httpx.MockTransport; no network access.
"""

import json

import httpx
import pytest

from settlement_batch.gateway.base import GatewayStatus, PayoutGateway
from settlement_batch.gateway.razorpayx import (
    NARRATION_MAX_LENGTH,
    RazorpayXGateway,
    build_narration,
    map_status,
)
from settlement_kernel.exceptions import (
    ComplianceBlockError,
    GatewayAuthenticationError,
    GatewayRateLimitError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    InsufficientPlatformBalanceError,
    InvalidDestinationError,
    PermanentGatewayError,
    TransientGatewayError,
)

FUND_ACCOUNTS = {"coach-1": "fa_001"}


def _gateway(handler) -> RazorpayXGateway:
    client = httpx.Client(
        base_url="https://razorpayx.test/v1",
        transport=httpx.MockTransport(handler),
    )
    return RazorpayXGateway(
        key_id="rzp_test",
        key_secret="secret",
        account_number="2323230000000000",
        fund_account_resolver=FUND_ACCOUNTS.get,
        client=client,
    )


def _error(status: int, description: str, code: str = "BAD_REQUEST_ERROR"):
    def handler(request):
        return httpx.Response(status, json={"error": {"code": code, "description": description}})
    return handler


class TestSubmitPayout:
    def test_request_shape(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["idempotency"] = request.headers.get("X-Payout-Idempotency")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "pout_abc", "status": "processing"})

        with _gateway(handler) as gateway:
            submission = gateway.submit_payout("po-key", "coach-1", 12_345, "INR")

        assert submission.gateway_ref == "pout_abc"
        assert submission.status == GatewayStatus.PROCESSING
        assert seen["method"] == "POST"
        assert seen["path"] == "/v1/payouts"
        assert seen["idempotency"] == "po-key"
        body = seen["body"]
        assert body["fund_account_id"] == "fa_001"
        assert body["amount"] == 12_345
        assert body["currency"] == "INR"
        assert body["reference_id"] == "po-key"
        assert body["queue_if_low_balance"] is False
        assert len(body["narration"]) <= NARRATION_MAX_LENGTH

    def test_processed_on_creation_is_completed(self):
        gateway = _gateway(lambda r: httpx.Response(200, json={"id": "pout_1", "status": "processed"}))

        assert gateway.submit_payout("k", "coach-1", 100, "INR").status == GatewayStatus.COMPLETED

    def test_rejected_on_creation_carries_reason(self):
        gateway = _gateway(lambda r: httpx.Response(200, json={
            "id": "pout_1",
            "status": "rejected",
            "status_details": {"description": "Beneficiary bank offline"},
        }))

        submission = gateway.submit_payout("k", "coach-1", 100, "INR")

        assert submission.status == GatewayStatus.FAILED
        assert submission.detail == "Beneficiary bank offline"

    def test_missing_fund_account_is_permanent(self):
        calls = []
        gateway = _gateway(lambda r: calls.append(r) or httpx.Response(200, json={}))

        with pytest.raises(InvalidDestinationError):
            gateway.submit_payout("k", "coach-without-account", 100, "INR")
        assert calls == []

    def test_response_without_id_is_transient(self):
        gateway = _gateway(lambda r: httpx.Response(200, json={"status": "queued"}))

        with pytest.raises(GatewayUnavailableError):
            gateway.submit_payout("k", "coach-1", 100, "INR")


class TestErrorMapping:
    @pytest.mark.parametrize("status,description,expected", [
        (429, "Too many requests", GatewayRateLimitError),
        (500, "Internal error", GatewayUnavailableError),
        (503, "Maintenance", GatewayUnavailableError),
        (401, "Authentication failed", GatewayAuthenticationError),
        (400, "Your account does not have enough balance", InsufficientPlatformBalanceError),
        (400, "Payout blocked due to compliance review", ComplianceBlockError),
        (400, "The fund account id provided is invalid", InvalidDestinationError),
    ])
    def test_http_errors(self, status, description, expected):
        gateway = _gateway(_error(status, description))

        with pytest.raises(expected) as exc_info:
            gateway.submit_payout("k", "coach-1", 100, "INR")
        assert description in exc_info.value.detail

    def test_classification_families(self):
        assert issubclass(GatewayRateLimitError, TransientGatewayError)
        assert issubclass(InsufficientPlatformBalanceError, PermanentGatewayError)

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(GatewayTimeoutError):
            _gateway(handler).submit_payout("k", "coach-1", 100, "INR")

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(GatewayUnavailableError):
            _gateway(handler).query_status("pout_1")


class TestQueryStatus:
    def test_fetches_payout_by_reference(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={"id": "pout_9", "status": "reversed"})

        assert _gateway(handler).query_status("pout_9") == GatewayStatus.FAILED
        assert seen == ["/v1/payouts/pout_9"]

    @pytest.mark.parametrize("raw,expected", [
        ("queued", GatewayStatus.PROCESSING),
        ("PROCESSED", GatewayStatus.COMPLETED),
        ("cancelled", GatewayStatus.FAILED),
        ("something_new", GatewayStatus.PROCESSING),
        (None, GatewayStatus.PROCESSING),
    ])
    def test_status_mapping(self, raw, expected):
        assert map_status(raw) == expected


def test_narration_truncated():
    assert len(build_narration("c" * 100)) == NARRATION_MAX_LENGTH


def test_satisfies_gateway_protocol():
    assert isinstance(_gateway(lambda r: httpx.Response(200, json={})), PayoutGateway)
