"""Money-movement gateway protocol and adapters."""

from settlement_batch.gateway.base import GatewayStatus, GatewaySubmission, PayoutGateway
from settlement_batch.gateway.razorpayx import RazorpayXGateway, map_status

__all__ = [
    "GatewayStatus",
    "GatewaySubmission",
    "PayoutGateway",
    "RazorpayXGateway",
    "map_status",
]
