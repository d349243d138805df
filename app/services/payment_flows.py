import json
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from app.errors import ProviderError, SignatureInvalid
from app.models.booking import PaymentStatus
from app.schemas.booking import (
    BookingDetailsIn,
    BookingRecord,
    ClientStatusReport,
    CreatePaymentRequest,
    SettlementDetails,
    SetupPaymentIntentRequest,
)
from app.services.reconciliation import ReconciliationEngine
from app.services.stripe_service import (
    Intent,
    StripePaymentProvider,
    is_terminal_intent_status,
    outcome_from_intent_status,
)

logger = logging.getLogger(__name__)

WEBHOOK_OUTCOMES = {
    "payment_intent.succeeded": PaymentStatus.SUCCEEDED,
    "payment_intent.canceled": PaymentStatus.FAILED,
}


def to_minor_units(amount: Decimal) -> int:
    """Convert a decimal amount in major units to integer minor units."""
    return int((amount * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_total(accommodations: Dict[str, Any], catalog: Dict[str, Dict[str, Any]]) -> int:
    total = 0
    for option_id, selection in accommodations.items():
        option = catalog.get(option_id)
        if option and selection.selected:
            total += option["price"] * selection.quantity
    return total


class PaymentFlows:
    """The three ways a payment outcome reaches us, plus the legacy session lookup.

    Each path only talks to the provider and then hands the outcome to
    ``ReconciliationEngine.settle``.
    """

    def __init__(self, engine: ReconciliationEngine, provider: StripePaymentProvider, settings):
        self.engine = engine
        self.provider = provider
        self.settings = settings

    def _details(self, booking_details: BookingDetailsIn, amount_minor: int, is_mobile: bool) -> SettlementDetails:
        expected = compute_total(booking_details.accommodations, self.settings.ACCOMMODATION_OPTIONS)
        if expected and expected != amount_minor:
            logger.warning(
                f"Charged amount {amount_minor} differs from catalog total {expected} "
                f"for {booking_details.email}"
            )
        return SettlementDetails.from_booking_details(
            booking_details,
            total_amount=amount_minor,
            currency=self.settings.PAYMENT_CURRENCY,
            is_mobile_flow=is_mobile,
        )

    @staticmethod
    def _metadata(booking_details: BookingDetailsIn, is_mobile: bool) -> Dict[str, str]:
        # Enough for a webhook that wins the race to render complete emails
        metadata = {
            "fullName": booking_details.full_name,
            "email": booking_details.email,
            "mobile": booking_details.mobile,
            "isMobile": "true" if is_mobile else "false",
        }
        selected = {k: v.model_dump() for k, v in booking_details.accommodations.items() if v.selected}
        if selected:
            metadata["accommodations"] = json.dumps(selected, separators=(",", ":"))
        if booking_details.special_requirements:
            metadata["specialRequirements"] = booking_details.special_requirements
        return metadata

    # -- desktop: confirm now ----------------------------------------------

    def direct_confirm(self, request: CreatePaymentRequest) -> BookingRecord:
        amount_minor = to_minor_units(request.amount)
        logger.info(
            f"Processing payment of {amount_minor} {self.settings.PAYMENT_CURRENCY} "
            f"(mode={self.settings.PAYMENT_MODE}, mobile={request.is_mobile})"
        )
        details = self._details(request.booking_details, amount_minor, request.is_mobile)

        intent = self.provider.create_intent(
            amount_minor,
            confirm=True,
            payment_method=request.payment_method_ref,
            metadata=self._metadata(request.booking_details, request.is_mobile),
        )
        if not is_terminal_intent_status(intent.status):
            try:
                intent = self.provider.confirm_intent(intent.id)
            except ProviderError as e:
                logger.warning(
                    f"Explicit confirmation of {intent.id} failed ({e.code}); "
                    f"settling with status {intent.status}"
                )

        # A direct-confirm intent is never retried by the client, so a decline is final
        outcome = outcome_from_intent_status(intent.status, final_attempt=True)
        return self.engine.settle(intent.id, outcome, details)

    # -- mobile: client confirms --------------------------------------------

    def setup_deferred(self, request: SetupPaymentIntentRequest) -> Intent:
        amount_minor = to_minor_units(request.amount)
        details = self._details(request.booking_details, amount_minor, True)
        intent = self.provider.create_intent(
            amount_minor,
            confirm=False,
            metadata=self._metadata(request.booking_details, True),
        )
        self.engine.create_placeholder(intent.id, details)
        logger.info(f"Mobile payment intent {intent.id} set up; waiting for client confirmation")
        return intent

    def report_client_status(self, report: ClientStatusReport) -> BookingRecord:
        # The client's word is not proof of payment; ask the provider
        intent = self.provider.retrieve_intent(report.payment_intent_id)
        if intent.status != report.status:
            logger.warning(
                f"Client reported {report.status} for {intent.id} but provider says {intent.status}"
            )
        details = None
        if report.booking_details is not None:
            amount_minor = to_minor_units(report.amount) if report.amount is not None else intent.amount
            details = self._details(report.booking_details, amount_minor, True)
        return self.engine.settle(intent.id, outcome_from_intent_status(intent.status), details)

    # -- provider push --------------------------------------------------------

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        secret = self.settings.STRIPE_WEBHOOK_SECRET
        if not secret and not self.settings.ALLOW_UNVERIFIED_WEBHOOKS:
            logger.error("Rejecting webhook: STRIPE_WEBHOOK_SECRET is not configured")
            raise SignatureInvalid("Webhook signing secret not configured", code="webhook_secret_missing")

        event = self.provider.verify_webhook(payload, signature, secret)
        outcome = WEBHOOK_OUTCOMES.get(event.type)
        if outcome is None:
            logger.info(f"Ignoring webhook event {event.id} of type {event.type}")
            return {"received": True}

        reference = event.payment_reference
        if not reference:
            logger.warning(f"Webhook event {event.id} ({event.type}) carries no payment reference")
            return {"received": True}

        metadata = event.object.get("metadata") or {}
        amount = event.object.get("amount")
        currency = event.object.get("currency")
        if not event.verified:
            # Unsigned payloads only tell us which intent to look at
            intent = self.provider.retrieve_intent(reference)
            logger.warning(f"Unverified webhook for {reference}; provider reports {intent.status}")
            outcome = outcome_from_intent_status(intent.status)
            metadata = intent.metadata
            amount = intent.amount
            currency = None

        details = self._details_from_metadata(metadata, amount, currency)
        booking = self.engine.settle(reference, outcome, details)
        logger.info(f"Webhook {event.type} settled booking {booking.id} as {booking.payment_status}")
        return {"received": True}

    def _details_from_metadata(
        self, metadata: Dict[str, Any], amount: Optional[int] = None, currency: Optional[str] = None
    ) -> Optional[SettlementDetails]:
        accommodations = None
        if metadata.get("accommodations"):
            try:
                accommodations = json.loads(metadata["accommodations"])
            except ValueError:
                logger.warning("Unreadable accommodations in payment metadata")
            if not isinstance(accommodations, dict):
                accommodations = None

        details = SettlementDetails(
            full_name=metadata.get("fullName") or None,
            email=(metadata.get("email") or "").strip().lower() or None,
            phone=metadata.get("mobile") or None,
            accommodations=accommodations,
            special_requirements=metadata.get("specialRequirements") or None,
            total_amount=amount if isinstance(amount, int) else None,
            currency=(currency or self.settings.PAYMENT_CURRENCY) if isinstance(amount, int) else None,
            is_mobile_flow=True if metadata.get("isMobile") == "true" else None,
        )
        if not details.to_columns():
            return None
        return details

    # -- legacy checkout session lookup ----------------------------------------

    def booking_details(self, session_id: str) -> BookingRecord:
        booking = self.engine.store.get_by_session(session_id)
        if booking is not None:
            return booking

        session = self.provider.retrieve_checkout_session(session_id)
        if not session.payment_intent:
            raise ProviderError(
                "Checkout session has no payment attached",
                code="no_payment_intent",
                type="invalid_request_error",
            )
        try:
            parsed = json.loads(session.client_reference_id or "{}")
        except ValueError:
            logger.warning(f"Unreadable client reference on checkout session {session_id}")
            parsed = {}
        if not isinstance(parsed, dict):
            parsed = {}

        email = parsed.get("email")
        details = SettlementDetails(
            full_name=parsed.get("fullName"),
            email=email.strip().lower() if email else None,
            phone=parsed.get("mobile"),
            accommodations=parsed.get("accommodations"),
            special_requirements=parsed.get("specialRequirements"),
            total_amount=session.amount_total,
            currency=self.settings.PAYMENT_CURRENCY,
            session_reference=session_id,
        )
        return self.engine.settle(session.payment_intent, session.outcome, details)
