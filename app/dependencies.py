from dataclasses import dataclass

from fastapi import Request

from app.db.crud import BookingStore
from app.services.email_service import NotificationService, SesEmailSender
from app.services.payment_flows import PaymentFlows
from app.services.reconciliation import ReconciliationEngine
from app.services.stripe_service import StripePaymentProvider


@dataclass
class Services:
    store: BookingStore
    engine: ReconciliationEngine
    flows: PaymentFlows


def build_services(settings, session_factory=None, provider=None, notifier=None) -> Services:
    """Construct the capability objects once; handlers receive them by reference."""
    if session_factory is None:
        from app.db.session import SessionLocal, engine, init_db

        init_db(engine)
        session_factory = SessionLocal

    store = BookingStore(session_factory)
    store.seed_inventory(settings.INITIAL_INVENTORY)

    if provider is None:
        provider = StripePaymentProvider(
            settings.STRIPE_SECRET_KEY,
            currency=settings.PAYMENT_CURRENCY,
            return_url=settings.return_url,
        )
    if notifier is None:
        notifier = NotificationService(
            SesEmailSender(settings.AWS_REGION, settings.AWS_SES_FROM_EMAIL),
            admin_emails=settings.ADMIN_EMAILS,
            catalog=settings.ACCOMMODATION_OPTIONS,
        )

    engine = ReconciliationEngine(
        store, notifier, claim_timeout_seconds=settings.NOTIFICATION_CLAIM_TIMEOUT_SECONDS
    )
    return Services(store=store, engine=engine, flows=PaymentFlows(engine, provider, settings))


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_flows(request: Request) -> PaymentFlows:
    return get_services(request).flows


def get_engine(request: Request) -> ReconciliationEngine:
    return get_services(request).engine


def get_store(request: Request) -> BookingStore:
    return get_services(request).store
