import logging
from datetime import timedelta
from typing import Callable, Iterable, List, Optional, Tuple

from app.db.crud import ADMIN, CUSTOMER, NOTIFICATION_FIELDS, BookingStore
from app.errors import BookingNotFound
from app.models.booking import PaymentStatus, utcnow
from app.schemas.booking import BookingRecord, SettlementDetails
from app.services.email_service import NotificationResult

logger = logging.getLogger(__name__)

NOTIFICATION_KINDS = (CUSTOMER, ADMIN)


class ReconciliationEngine:
    """Applies payment outcomes to bookings, whichever path reports them first.

    ``settle`` is the only way a payment outcome reaches a booking. It is safe
    to call any number of times, in any order, from any process: all state
    changes go through the store's conditional updates, and each side effect
    (customer email, admin email, inventory decrement) is guarded by its own
    compare-and-set.
    """

    def __init__(
        self,
        store: BookingStore,
        notifier,
        claim_timeout_seconds: int = 300,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.notifier = notifier
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self._clock = clock

    def create_placeholder(self, payment_reference: str, details: Optional[SettlementDetails]) -> BookingRecord:
        """Anchor a booking to a payment reference before the outcome is known. Sends nothing."""
        booking, created = self.store.find_or_create(payment_reference, details)
        if not created:
            logger.info(f"Placeholder for payment {payment_reference} already exists ({booking.payment_status})")
        return booking

    def settle(
        self,
        payment_reference: str,
        outcome: str,
        details: Optional[SettlementDetails] = None,
    ) -> BookingRecord:
        if outcome not in PaymentStatus.ALL:
            raise ValueError(f"Unknown payment outcome: {outcome}")

        booking, created = self.store.find_or_create(payment_reference, details)
        if created:
            logger.info(f"Settlement created booking {booking.id} for payment {payment_reference}")

        if outcome in PaymentStatus.TERMINAL:
            if self.store.advance_status(payment_reference, outcome):
                logger.info(f"Payment {payment_reference} moved to {outcome}")
            else:
                current = self.store.get_by_reference(payment_reference)
                if current.payment_status != outcome:
                    logger.warning(
                        f"Ignoring {outcome} for payment {payment_reference}: "
                        f"already {current.payment_status}"
                    )

        booking = self.store.get_by_reference(payment_reference)
        if booking.payment_status == PaymentStatus.SUCCEEDED:
            self._decrement_inventory(booking)
            booking = self._dispatch(booking)
        elif booking.payment_status == PaymentStatus.FAILED:
            logger.info(f"Payment {payment_reference} failed; no inventory was taken for booking {booking.id}")
        return booking

    def dispatch_notifications(self, payment_reference: str) -> BookingRecord:
        """Retry any notification still owed for a succeeded booking."""
        booking = self.store.get_by_reference(payment_reference)
        if booking is None:
            raise BookingNotFound(f"No booking for payment {payment_reference}")
        if booking.payment_status != PaymentStatus.SUCCEEDED:
            return booking
        return self._dispatch(booking)

    def retry_pending_notifications(self, limit: int = 50) -> List[BookingRecord]:
        results = []
        for booking in self.store.list_pending_notifications(limit=limit):
            self._decrement_inventory(booking)
            results.append(self._dispatch(booking))
        return results

    def resend_notification(
        self, booking_id: int, kind: str, force: bool = False
    ) -> Tuple[BookingRecord, Optional[NotificationResult]]:
        """Send one notification for a booking on operator request.

        Without ``force`` this is the regular idempotent retry. With ``force``
        the notification is sent again even if it already went out.
        """
        booking = self.store.get_by_id(booking_id)
        if booking is None:
            raise BookingNotFound("Booking not found")
        if booking.payment_status != PaymentStatus.SUCCEEDED:
            return booking, None
        result = self._send_once(booking, kind, force=force)
        return self.store.get_by_id(booking_id), result

    def override_status(self, booking_id: int, status: str) -> BookingRecord:
        """Administrative status change. Bypasses the monotonic rule on purpose."""
        booking = self.store.override_status(booking_id, status)
        if booking is None:
            raise BookingNotFound("Booking not found")
        logger.warning(f"Payment status of booking {booking_id} overridden to {status}")
        if status == PaymentStatus.SUCCEEDED:
            self._decrement_inventory(booking)
            booking = self._dispatch(booking)
        return booking

    # -- side effects -------------------------------------------------------

    def _decrement_inventory(self, booking: BookingRecord) -> None:
        if booking.inventory_decremented:
            return
        oversold = self.store.claim_inventory_decrement(booking.payment_reference)
        if oversold:
            logger.warning(
                f"Booking {booking.id} oversold accommodation {', '.join(oversold)}; "
                "inventory is below zero and needs manual attention"
            )

    def _dispatch(self, booking: BookingRecord, kinds: Iterable[str] = NOTIFICATION_KINDS) -> BookingRecord:
        for kind in kinds:
            flag = NOTIFICATION_FIELDS[kind][0]
            if getattr(booking, flag):
                continue
            self._send_once(booking, kind)
        return self.store.get_by_reference(booking.payment_reference)

    def _send_once(self, booking: BookingRecord, kind: str, force: bool = False) -> Optional[NotificationResult]:
        ref = booking.payment_reference
        claimed = self.store.claim_notification(
            ref, kind, now=self._clock(), lease=self.claim_timeout, force=force
        )
        if not claimed:
            logger.info(f"Skipping {kind} notification for payment {ref}: already sent or in flight")
            return None

        # Render from the freshest row; details may have been merged since the caller read it
        current = self.store.get_by_reference(ref)
        try:
            if kind == CUSTOMER:
                result = self.notifier.send_customer_confirmation(current)
            else:
                result = self.notifier.send_admin_alert(current)
        except Exception:
            self.store.release_notification(ref, kind)
            raise

        if result.success:
            self.store.complete_notification(ref, kind, result.message_id)
            logger.info(f"Sent {kind} notification for payment {ref} (message {result.message_id})")
        else:
            self.store.release_notification(ref, kind)
            logger.error(f"Failed to send {kind} notification for payment {ref}: {result.error}; will retry")
        return result
