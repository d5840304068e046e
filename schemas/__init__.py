from .scan import (
     ScanResponse,
     RateLimitStatusResponse,
     SessionStatusResponse,
)
from .receipt import (
     ReceiptResponse,
     AdminReceiptResponse,
     AdminReceiptListResponse,
     DisbursementResponse,
     RejectRequest,
     ReleasePayoutRequest,
)
from .admin import AdminLoginRequest, AdminTokenResponse, PayoutModeResponse, ScanRejectRequest
from .webhook import PayPalWebhookEvent, WebhookAck

__all__ = [
     "ScanResponse",
     "RateLimitStatusResponse",
     "SessionStatusResponse",
     "ReceiptResponse",
     "AdminReceiptResponse",
     "AdminReceiptListResponse",
     "DisbursementResponse",
     "RejectRequest",
     "ReleasePayoutRequest",
     "AdminLoginRequest",
     "AdminTokenResponse",
     "PayoutModeResponse",
     "ScanRejectRequest",
     "PayPalWebhookEvent",
     "WebhookAck",
]
