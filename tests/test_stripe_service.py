import json
import time

import pytest
import stripe

from app.errors import ProviderError, SignatureInvalid, WebhookPayloadInvalid
from app.models.booking import PaymentStatus
from app.services.stripe_service import (
    StripePaymentProvider,
    is_terminal_intent_status,
    outcome_from_intent_status,
)


@pytest.fixture
def stripe_provider():
    return StripePaymentProvider("sk_test_123", currency="gbp", return_url="https://localhost:4433/booking/confirmation")


def _payload(event_type="payment_intent.succeeded", obj=None):
    return json.dumps(
        {
            "id": "evt_1",
            "type": event_type,
            "data": {"object": obj or {"id": "pi_abc123", "object": "payment_intent", "status": "succeeded"}},
        }
    )


def test_verify_webhook_accepts_valid_signature(stripe_provider, sign, webhook_secret):
    payload = _payload()
    event = stripe_provider.verify_webhook(payload.encode(), sign(payload), webhook_secret)

    assert event.verified is True
    assert event.type == "payment_intent.succeeded"
    assert event.payment_reference == "pi_abc123"


def test_verify_webhook_rejects_wrong_secret(stripe_provider, sign, webhook_secret):
    payload = _payload()
    with pytest.raises(SignatureInvalid):
        stripe_provider.verify_webhook(payload.encode(), sign(payload, secret="whsec_other"), webhook_secret)


def test_verify_webhook_rejects_tampered_payload(stripe_provider, sign, webhook_secret):
    payload = _payload()
    header = sign(payload)
    tampered = payload.replace("pi_abc123", "pi_evil")
    with pytest.raises(SignatureInvalid):
        stripe_provider.verify_webhook(tampered.encode(), header, webhook_secret)


def test_verify_webhook_rejects_stale_timestamp(stripe_provider, sign, webhook_secret):
    payload = _payload()
    header = sign(payload, timestamp=int(time.time()) - 3600)
    with pytest.raises(SignatureInvalid):
        stripe_provider.verify_webhook(payload.encode(), header, webhook_secret)


def test_verify_webhook_requires_signature_header(stripe_provider, webhook_secret):
    with pytest.raises(SignatureInvalid):
        stripe_provider.verify_webhook(_payload().encode(), None, webhook_secret)


def test_verify_webhook_without_secret_marks_event_unverified(stripe_provider):
    event = stripe_provider.verify_webhook(_payload().encode(), None, None)
    assert event.verified is False
    assert event.payment_reference == "pi_abc123"


def test_verify_webhook_rejects_malformed_payload(stripe_provider, sign, webhook_secret):
    with pytest.raises(WebhookPayloadInvalid):
        stripe_provider.verify_webhook(b"not json", None, None)
    payload = json.dumps({"type": "payment_intent.succeeded", "data": {}})
    with pytest.raises(WebhookPayloadInvalid):
        stripe_provider.verify_webhook(payload.encode(), sign(payload), webhook_secret)


def test_charge_events_point_at_their_intent(stripe_provider):
    payload = _payload("charge.succeeded", {"id": "ch_1", "object": "charge", "payment_intent": "pi_from_charge"})
    event = stripe_provider.verify_webhook(payload.encode(), None, None)
    assert event.payment_reference == "pi_from_charge"


@pytest.mark.parametrize(
    "status,final,expected",
    [
        ("succeeded", False, PaymentStatus.SUCCEEDED),
        ("canceled", False, PaymentStatus.FAILED),
        ("requires_payment_method", False, PaymentStatus.PROCESSING),
        ("requires_payment_method", True, PaymentStatus.FAILED),
        ("requires_action", True, PaymentStatus.PROCESSING),
        ("processing", True, PaymentStatus.PROCESSING),
    ],
)
def test_outcome_from_intent_status(status, final, expected):
    assert outcome_from_intent_status(status, final_attempt=final) == expected


def test_terminal_intent_statuses():
    assert is_terminal_intent_status("succeeded")
    assert is_terminal_intent_status("canceled")
    assert not is_terminal_intent_status("requires_confirmation")
    assert not is_terminal_intent_status("requires_action")


def test_create_intent_passes_key_and_confirmation(monkeypatch, stripe_provider):
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        return {"id": "pi_1", "status": "succeeded", "client_secret": "pi_1_secret", "amount": kwargs["amount"], "metadata": {"email": "a@b.co"}}

    monkeypatch.setattr(stripe.PaymentIntent, "create", staticmethod(fake_create))
    intent = stripe_provider.create_intent(90000, confirm=True, payment_method="pm_card_visa", metadata={"email": "a@b.co"})

    assert intent.id == "pi_1"
    assert intent.status == "succeeded"
    assert intent.metadata == {"email": "a@b.co"}
    assert calls == [
        {
            "api_key": "sk_test_123",
            "amount": 90000,
            "currency": "gbp",
            "payment_method": "pm_card_visa",
            "confirm": True,
            "return_url": "https://localhost:4433/booking/confirmation",
            "metadata": {"email": "a@b.co"},
        }
    ]


def test_create_deferred_intent_has_no_confirmation(monkeypatch, stripe_provider):
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        return {"id": "pi_2", "status": "requires_payment_method", "client_secret": "pi_2_secret"}

    monkeypatch.setattr(stripe.PaymentIntent, "create", staticmethod(fake_create))
    intent = stripe_provider.create_intent(110000, confirm=False)

    assert intent.client_secret == "pi_2_secret"
    assert "confirm" not in calls[0]
    assert calls[0]["payment_method_types"] == ["card"]


def test_stripe_errors_become_provider_errors(monkeypatch, stripe_provider):
    def declined(**kwargs):
        raise stripe.CardError(
            "Your card was declined.",
            None,
            "card_declined",
            json_body={"error": {"type": "card_error", "code": "card_declined", "message": "Your card was declined."}},
        )

    monkeypatch.setattr(stripe.PaymentIntent, "create", staticmethod(declined))
    with pytest.raises(ProviderError) as exc_info:
        stripe_provider.create_intent(90000, confirm=True, payment_method="pm_card_chargeDeclined")

    error = exc_info.value
    assert error.code == "card_declined"
    assert error.type == "card_error"
    assert error.to_dict()["error"]["message"] == "Your card was declined."


def test_confirm_and_retrieve(monkeypatch, stripe_provider):
    monkeypatch.setattr(
        stripe.PaymentIntent, "confirm", staticmethod(lambda intent_id, **kw: {"id": intent_id, "status": "succeeded"})
    )
    monkeypatch.setattr(
        stripe.PaymentIntent, "retrieve", staticmethod(lambda intent_id, **kw: {"id": intent_id, "status": "processing"})
    )

    assert stripe_provider.confirm_intent("pi_1").status == "succeeded"
    assert stripe_provider.retrieve_intent("pi_1").status == "processing"


def test_missing_api_key_is_a_provider_error():
    provider = StripePaymentProvider(None)
    with pytest.raises(ProviderError) as exc_info:
        provider.retrieve_intent("pi_1")
    assert exc_info.value.code == "not_configured"
