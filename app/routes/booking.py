from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse
import logging

from app.db.crud import ADMIN, CUSTOMER, BookingStore
from app.dependencies import get_engine, get_store
from app.errors import BookingNotFound
from app.models.booking import PaymentStatus
from app.schemas.booking import AdminBookingView, EmailLookup, InventoryView, StatusUpdate
from app.services.reconciliation import ReconciliationEngine

router = APIRouter()
logger = logging.getLogger(__name__)


def _view(booking) -> dict:
    return AdminBookingView.from_record(booking).model_dump(by_alias=True, mode="json")


def _resend(engine: ReconciliationEngine, booking_id: int, kind: str, force: bool, label: str):
    booking, result = engine.resend_notification(booking_id, kind, force=force)
    if result is None:
        if booking.payment_status != PaymentStatus.SUCCEEDED:
            return JSONResponse(
                status_code=409,
                content={"success": False, "error": f"Payment for this booking is {booking.payment_status}"},
            )
        already_sent = booking.customer_email_sent if kind == CUSTOMER else booking.admin_notified
        if already_sent:
            return {"success": True, "message": f"{label} already sent"}
        return JSONResponse(
            status_code=409, content={"success": False, "error": f"{label} is already being sent"}
        )
    if not result.success:
        logger.error(f"Manual {kind} notification for booking {booking_id} failed: {result.error}")
        return JSONResponse(status_code=502, content={"success": False, "error": f"Failed to send {label.lower()}"})
    return {"success": True, "message": f"{label} sent successfully"}


@router.get("")
def get_all_bookings(store: BookingStore = Depends(get_store)):
    bookings = store.list_bookings()
    return {"success": True, "count": len(bookings), "data": [_view(b) for b in bookings]}


@router.get("/inventory")
def get_inventory(store: BookingStore = Depends(get_store)):
    items = [InventoryView.model_validate(i).model_dump() for i in store.get_inventory()]
    return {"success": True, "data": items}


@router.post("/retry-notifications")
def retry_notifications(limit: int = Query(50, ge=1, le=500), engine: ReconciliationEngine = Depends(get_engine)):
    bookings = engine.retry_pending_notifications(limit=limit)
    outstanding = [b for b in bookings if not (b.customer_email_sent and b.admin_notified)]
    return {
        "success": True,
        "count": len(bookings),
        "outstanding": len(outstanding),
        "data": [_view(b) for b in bookings],
    }


@router.post("/by-email")
def get_bookings_by_email(lookup: EmailLookup = Body(...), store: BookingStore = Depends(get_store)):
    bookings = store.list_by_email(lookup.email)
    return {"success": True, "count": len(bookings), "data": [_view(b) for b in bookings]}


@router.get("/{booking_id}")
def get_booking(booking_id: int, store: BookingStore = Depends(get_store)):
    booking = store.get_by_id(booking_id)
    if booking is None:
        raise BookingNotFound("Booking not found")
    return {"success": True, "data": _view(booking)}


@router.post("/{booking_id}/resend-confirmation")
def resend_confirmation(
    booking_id: int, force: bool = Query(False), engine: ReconciliationEngine = Depends(get_engine)
):
    return _resend(engine, booking_id, CUSTOMER, force, "Confirmation email")


@router.post("/{booking_id}/admin-notification")
def send_admin_notification(
    booking_id: int, force: bool = Query(False), engine: ReconciliationEngine = Depends(get_engine)
):
    return _resend(engine, booking_id, ADMIN, force, "Admin notification")


@router.patch("/{booking_id}/status")
def update_booking_status(
    booking_id: int, update: StatusUpdate = Body(...), engine: ReconciliationEngine = Depends(get_engine)
):
    booking = engine.override_status(booking_id, update.payment_status)
    return {"success": True, "data": _view(booking)}
