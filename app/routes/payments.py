from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse

from app.config import settings
from app.dependencies import get_flows
from app.errors import SignatureInvalid, WebhookPayloadInvalid
from app.schemas.booking import (
    BookingSummary,
    BookingSummaryResponse,
    ClientStatusReport,
    CreatePaymentRequest,
    SetupPaymentIntentRequest,
    SetupPaymentIntentResponse,
)
from app.services.payment_flows import PaymentFlows

router = APIRouter()
logger = logging.getLogger(__name__)


def _summary(booking) -> BookingSummaryResponse:
    return BookingSummaryResponse(booking_summary=BookingSummary.from_record(booking))


@router.get("/ping")
def ping():
    return {
        "status": "ok",
        "message": "Server is running",
        "time": datetime.now(timezone.utc).isoformat(),
        "mode": settings.PAYMENT_MODE,
    }


@router.post("/create-payment", response_model=BookingSummaryResponse)
def create_payment(payment_request: CreatePaymentRequest, flows: PaymentFlows = Depends(get_flows)):
    booking = flows.direct_confirm(payment_request)
    return _summary(booking)


@router.post("/setup-payment-intent", response_model=SetupPaymentIntentResponse)
def setup_payment_intent(setup_request: SetupPaymentIntentRequest, flows: PaymentFlows = Depends(get_flows)):
    intent = flows.setup_deferred(setup_request)
    return SetupPaymentIntentResponse(client_secret=intent.client_secret, payment_intent_id=intent.id)


@router.post("/confirm-mobile-payment", response_model=BookingSummaryResponse)
def confirm_mobile_payment(report: ClientStatusReport, flows: PaymentFlows = Depends(get_flows)):
    booking = flows.report_client_status(report)
    return _summary(booking)


@router.post("/webhook")
async def webhook(request: Request, flows: PaymentFlows = Depends(get_flows)):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    try:
        result = await run_in_threadpool(flows.handle_webhook, payload, sig_header)
    except (SignatureInvalid, WebhookPayloadInvalid) as e:
        logger.warning(f"Webhook rejected: {e.message}")
        return PlainTextResponse(f"Webhook Error: {e.message}", status_code=400)
    return result


@router.get("/booking-details", response_model=BookingSummaryResponse)
def booking_details(session_id: str = Query(None), flows: PaymentFlows = Depends(get_flows)):
    if not session_id:
        return JSONResponse(status_code=400, content={"success": False, "error": "No session ID provided"})
    booking = flows.booking_details(session_id)
    return _summary(booking)
