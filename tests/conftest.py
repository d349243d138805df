import hashlib
import hmac
import itertools
import json
import threading
import time
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.db.crud import BookingStore
from app.db.session import init_db, make_engine, make_session_factory
from app.dependencies import build_services
from app.errors import ProviderError
from app.main import create_app
from app.services.email_service import NotificationResult
from app.services.reconciliation import ReconciliationEngine
from app.services.stripe_service import CheckoutSession, Intent, StripePaymentProvider

WEBHOOK_SECRET = "whsec_test_secret"


class FakeProvider(StripePaymentProvider):
    """Stripe stand-in: network calls are served from memory, webhook verification is real."""

    def __init__(self):
        super().__init__("sk_test_fake", currency="gbp", return_url="https://localhost:4433/booking/confirmation")
        self.intents = {}
        self.sessions = {}
        self.created = []
        self.confirm_calls = []
        self.create_status = "succeeded"
        self.confirm_status = "succeeded"
        self.confirm_error = None
        self.create_error = None
        self.next_intent_id = None
        self.after_create = None
        self._ids = itertools.count(1)

    def create_intent(self, amount_minor, *, confirm, payment_method=None, metadata=None):
        if self.create_error is not None:
            raise self.create_error
        intent_id = self.next_intent_id or f"pi_test_{next(self._ids)}"
        self.next_intent_id = None
        intent = Intent(
            id=intent_id,
            status=self.create_status if confirm else "requires_payment_method",
            client_secret=f"{intent_id}_secret_xyz",
            amount=amount_minor,
            metadata=dict(metadata or {}),
        )
        self.intents[intent_id] = intent
        self.created.append({"amount": amount_minor, "confirm": confirm, "payment_method": payment_method})
        if self.after_create is not None:
            self.after_create(replace(intent))
        return replace(intent)

    def confirm_intent(self, intent_id):
        self.confirm_calls.append(intent_id)
        if self.confirm_error is not None:
            raise self.confirm_error
        self.intents[intent_id].status = self.confirm_status
        return replace(self.intents[intent_id])

    def retrieve_intent(self, intent_id):
        if intent_id not in self.intents:
            raise ProviderError("No such payment_intent", code="resource_missing", type="invalid_request_error")
        return replace(self.intents[intent_id])

    def set_status(self, intent_id, status):
        self.intents[intent_id].status = status

    def retrieve_checkout_session(self, session_id):
        if session_id not in self.sessions:
            raise ProviderError("No such checkout.session", code="resource_missing", type="invalid_request_error")
        return self.sessions[session_id]

    def add_checkout_session(self, session_id, payment_intent, payment_status, amount_total, details):
        self.sessions[session_id] = CheckoutSession(
            id=session_id,
            payment_intent=payment_intent,
            payment_status=payment_status,
            amount_total=amount_total,
            client_reference_id=json.dumps(details),
        )


class RecordingNotifier:
    """Counts notification attempts and successful sends per payment reference."""

    def __init__(self, delay=0.0):
        self.delay = delay
        self.fail_customer = False
        self.fail_admin = False
        self.customer_attempts = []
        self.admin_attempts = []
        self.customer_sent = []
        self.admin_sent = []
        self.rendered = []
        self._lock = threading.Lock()

    def _send(self, booking, attempts, sent, fail):
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            attempts.append(booking.payment_reference)
            self.rendered.append(booking)
            if fail:
                return NotificationResult(success=False, error="transport down")
            sent.append(booking.payment_reference)
            return NotificationResult(success=True, message_id=f"msg-{len(sent)}")

    def send_customer_confirmation(self, booking):
        return self._send(booking, self.customer_attempts, self.customer_sent, self.fail_customer)

    def send_admin_alert(self, booking):
        return self._send(booking, self.admin_attempts, self.admin_sent, self.fail_admin)


@pytest.fixture
def test_settings():
    s = Settings()
    s.STRIPE_SECRET_KEY = "sk_test_fake"
    s.STRIPE_WEBHOOK_SECRET = WEBHOOK_SECRET
    s.ALLOW_UNVERIFIED_WEBHOOKS = False
    s.PAYMENT_CURRENCY = "gbp"
    s.ADMIN_EMAILS = ["admin@example.com"]
    s.INITIAL_INVENTORY = {"double": 10, "single": 7}
    s.NOTIFICATION_CLAIM_TIMEOUT_SECONDS = 300
    return s


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'bookings.db'}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory, test_settings):
    booking_store = BookingStore(session_factory)
    booking_store.seed_inventory(test_settings.INITIAL_INVENTORY)
    return booking_store


@pytest.fixture
def make_notifier():
    return RecordingNotifier


@pytest.fixture
def notifier(make_notifier):
    return make_notifier()


@pytest.fixture
def webhook_secret():
    return WEBHOOK_SECRET


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def engine(store, notifier):
    return ReconciliationEngine(store, notifier, claim_timeout_seconds=300)


@pytest.fixture
def services(test_settings, session_factory, provider, notifier):
    return build_services(test_settings, session_factory=session_factory, provider=provider, notifier=notifier)


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


@pytest.fixture
def booking_details():
    return {
        "fullName": "Asha Patel",
        "email": "Asha@Example.com",
        "mobile": "+447700900123",
        "accommodations": {
            "single": {"selected": True, "quantity": 1},
            "double": {"selected": False, "quantity": 0},
        },
        "specialRequirements": "Vegetarian meals",
    }


@pytest.fixture
def sign():
    def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
        timestamp = timestamp or int(time.time())
        digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"

    return _sign


@pytest.fixture
def webhook_event():
    def _event(intent_id: str, event_type: str = "payment_intent.succeeded", metadata=None, amount=90000) -> str:
        return json.dumps(
            {
                "id": f"evt_{intent_id}",
                "type": event_type,
                "data": {
                    "object": {
                        "id": intent_id,
                        "object": "payment_intent",
                        "status": "succeeded",
                        "amount": amount,
                        "currency": "gbp",
                        "metadata": metadata or {},
                    }
                },
            }
        )

    return _event
