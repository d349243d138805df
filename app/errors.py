from typing import Any, Dict, Optional


class PaymentServiceError(Exception):
    """Base error carrying the HTTP status and the structured error envelope."""

    status_code = 400
    code = "error"
    type = "general_error"

    def __init__(self, message: str, code: Optional[str] = None, type: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if type:
            self.type = type

    def to_dict(self) -> Dict[str, Any]:
        return {"error": {"message": self.message, "code": self.code, "type": self.type}}


class ProviderError(PaymentServiceError):
    """The payment provider rejected a call or could not be reached."""

    code = "unknown"
    type = "provider_error"


class SignatureInvalid(PaymentServiceError):
    code = "signature_invalid"
    type = "webhook_error"


class WebhookPayloadInvalid(PaymentServiceError):
    code = "payload_invalid"
    type = "webhook_error"


class StoreUnavailable(PaymentServiceError):
    status_code = 503
    code = "store_unavailable"
    type = "api_error"


class BookingNotFound(PaymentServiceError):
    status_code = 404
    code = "booking_not_found"
    type = "invalid_request_error"


class NotificationFailure(Exception):
    """Email transport failed. Never surfaced to a request; the send is retried later."""
