# app/services/stripe_service.py
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe

from app.errors import ProviderError, SignatureInvalid, WebhookPayloadInvalid
from app.models.booking import PaymentStatus

logger = logging.getLogger(__name__)

WEBHOOK_TOLERANCE_SECONDS = 300

# Intent statuses that can still change without a new payment attempt
_PROCESSING_STATUSES = {"processing", "requires_action", "requires_confirmation", "requires_capture"}


def _get(obj: Any, name: str, default=None):
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _plain_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        obj = obj.to_dict()
    return dict(obj)


def outcome_from_intent_status(status: Optional[str], *, final_attempt: bool = False) -> str:
    """Map a Stripe PaymentIntent status onto a booking payment status.

    ``requires_payment_method`` means the card was declined; the customer may
    retry on the same intent unless the caller knows this was its only attempt.
    """
    if status == "succeeded":
        return PaymentStatus.SUCCEEDED
    if status == "canceled":
        return PaymentStatus.FAILED
    if status == "requires_payment_method" and final_attempt:
        return PaymentStatus.FAILED
    return PaymentStatus.PROCESSING


def is_terminal_intent_status(status: Optional[str]) -> bool:
    return status not in _PROCESSING_STATUSES and status != "requires_payment_method"


@dataclass
class Intent:
    id: str
    status: str
    client_secret: Optional[str] = None
    amount: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, obj: Any) -> "Intent":
        return cls(
            id=_get(obj, "id"),
            status=_get(obj, "status"),
            client_secret=_get(obj, "client_secret"),
            amount=_get(obj, "amount"),
            metadata=_plain_dict(_get(obj, "metadata")),
        )


@dataclass
class CheckoutSession:
    id: str
    payment_intent: Optional[str]
    payment_status: Optional[str]
    amount_total: Optional[int] = None
    client_reference_id: Optional[str] = None

    @property
    def outcome(self) -> str:
        if self.payment_status in ("paid", "no_payment_required"):
            return PaymentStatus.SUCCEEDED
        return PaymentStatus.PROCESSING


@dataclass
class WebhookEvent:
    id: Optional[str]
    type: str
    object: Dict[str, Any]
    verified: bool

    @property
    def payment_reference(self) -> Optional[str]:
        # payment_intent.* carries the intent itself, charge.* points at it
        if self.object.get("object") in (None, "payment_intent"):
            return self.object.get("id")
        return self.object.get("payment_intent")


def _provider_error(e: "stripe.StripeError") -> ProviderError:
    error = getattr(e, "error", None)
    error_type = getattr(error, "type", None) if error is not None else None
    message = getattr(e, "user_message", None) or str(e) or "Payment provider error"
    logger.error(f"[Stripe Error] code={getattr(e, 'code', None)} type={error_type} message={message}")
    return ProviderError(message, code=getattr(e, "code", None) or "unknown", type=error_type or "api_error")


class StripePaymentProvider:
    """Thin wrapper over the Stripe SDK. No retries; callers decide the retry policy."""

    def __init__(self, api_key: Optional[str], currency: str = "gbp", return_url: Optional[str] = None):
        self.api_key = api_key.strip() if api_key else None
        self.currency = currency
        self.return_url = return_url

    def _require_key(self) -> str:
        if not self.api_key:
            raise ProviderError(
                "Stripe client not initialized. Please check your Stripe API keys.",
                code="not_configured",
                type="configuration_error",
            )
        return self.api_key

    def create_intent(
        self,
        amount_minor: int,
        *,
        confirm: bool,
        payment_method: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Intent:
        params: Dict[str, Any] = {"amount": amount_minor, "currency": self.currency}
        if payment_method:
            params["payment_method"] = payment_method
        else:
            params["payment_method_types"] = ["card"]
        if confirm:
            params["confirm"] = True
            if self.return_url:
                params["return_url"] = self.return_url
        if metadata:
            params["metadata"] = metadata
        try:
            intent = stripe.PaymentIntent.create(api_key=self._require_key(), **params)
        except stripe.StripeError as e:
            raise _provider_error(e) from e
        result = Intent.from_stripe(intent)
        logger.info(f"Created payment intent {result.id} status={result.status} confirm={confirm}")
        return result

    def confirm_intent(self, intent_id: str) -> Intent:
        try:
            intent = stripe.PaymentIntent.confirm(intent_id, api_key=self._require_key())
        except stripe.StripeError as e:
            raise _provider_error(e) from e
        return Intent.from_stripe(intent)

    def retrieve_intent(self, intent_id: str) -> Intent:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self._require_key())
        except stripe.StripeError as e:
            raise _provider_error(e) from e
        return Intent.from_stripe(intent)

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self._require_key())
        except stripe.StripeError as e:
            raise _provider_error(e) from e
        return CheckoutSession(
            id=_get(session, "id"),
            payment_intent=_get(session, "payment_intent"),
            payment_status=_get(session, "payment_status"),
            amount_total=_get(session, "amount_total"),
            client_reference_id=_get(session, "client_reference_id"),
        )

    def verify_webhook(self, payload: bytes, signature: Optional[str], secret: Optional[str]) -> WebhookEvent:
        """Verify and parse a webhook delivery.

        Without a secret the payload is still parsed, but the event is marked
        unverified and the caller decides whether to trust it.
        """
        verified = False
        if secret:
            if not signature:
                raise SignatureInvalid("Missing Stripe-Signature header")
            try:
                stripe.WebhookSignature.verify_header(
                    payload.decode("utf-8"), signature, secret, WEBHOOK_TOLERANCE_SECONDS
                )
            except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
                logger.warning(f"[Stripe Webhook Error] Invalid signature: {e}")
                raise SignatureInvalid("Invalid Stripe signature") from e
            verified = True

        try:
            body = json.loads(payload)
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(f"[Stripe Webhook Error] Invalid payload: {e}")
            raise WebhookPayloadInvalid("Invalid webhook payload") from e

        if not isinstance(body, dict) or not isinstance(body.get("type"), str):
            raise WebhookPayloadInvalid("Webhook payload has no event type")
        obj = (body.get("data") or {}).get("object") if isinstance(body.get("data"), dict) else None
        if not isinstance(obj, dict):
            raise WebhookPayloadInvalid("Webhook payload has no data object")

        return WebhookEvent(id=body.get("id"), type=body["type"], object=obj, verified=verified)
