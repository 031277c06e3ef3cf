"""External gateway integrations."""
from .gateway import GatewayError, GatewayErrorType
from .razorpay_client import RazorpayClient
from .razorpayx_client import RazorpayXClient
from .webhook_handler import WebhookError, WebhookHandler

__all__ = [
    "GatewayError",
    "GatewayErrorType",
    "RazorpayClient",
    "RazorpayXClient",
    "WebhookError",
    "WebhookHandler",
]
