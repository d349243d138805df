import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, literal, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from app.errors import StoreUnavailable
from app.models.booking import Booking, InventoryItem, PaymentStatus, utcnow
from app.schemas.booking import BookingRecord, SettlementDetails

logger = logging.getLogger(__name__)

CUSTOMER = "customer"
ADMIN = "admin"

# kind -> (flag column, claim column, message id column)
NOTIFICATION_FIELDS = {
    CUSTOMER: ("customer_email_sent", "customer_email_claimed_at", "customer_email_message_id"),
    ADMIN: ("admin_notified", "admin_notify_claimed_at", "admin_message_id"),
}

# Columns a settlement may fill in; never overwritten once set
_FILLABLE = (
    "full_name",
    "email",
    "phone",
    "accommodations",
    "special_requirements",
    "total_amount",
    "currency",
    "session_reference",
)


class BookingStore:
    """Booking persistence built from single-statement, per-record atomic operations.

    Every mutation is one conditional statement (or one short transaction) so that
    concurrent handlers, possibly in different processes, cannot interleave a
    read and a write on the same booking.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self):
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except OperationalError as e:
            db.rollback()
            logger.error(f"Booking store unavailable: {e}")
            raise StoreUnavailable("Booking store is unavailable") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # -- find-or-create -------------------------------------------------

    def find_or_create(
        self, payment_reference: str, details: Optional[SettlementDetails] = None
    ) -> Tuple[BookingRecord, bool]:
        """Return the booking for a payment reference, inserting a processing row if absent.

        The unique constraint on ``payment_reference`` decides the winner when two
        callers race; the loser merges its details into the existing row.
        """
        columns = details.to_columns() if details else {}
        return self._find_or_create(payment_reference, columns)

    def _find_or_create(self, payment_reference: str, columns: Dict) -> Tuple[BookingRecord, bool]:
        created = True
        try:
            with self._transaction() as db:
                db.add(
                    Booking(
                        payment_reference=payment_reference,
                        payment_status=PaymentStatus.PROCESSING,
                        **columns,
                    )
                )
                db.flush()
        except IntegrityError:
            created = False

        if created:
            logger.info(f"Created booking for payment {payment_reference}")
        else:
            existing = self.get_by_reference(payment_reference)
            if existing is None:
                # The conflict was on a session reference already owned by another booking
                logger.warning(
                    f"Session reference {columns.get('session_reference')} already in use; "
                    f"storing payment {payment_reference} without it"
                )
                columns = {k: v for k, v in columns.items() if k != "session_reference"}
                return self._find_or_create(payment_reference, columns)
            if columns:
                self._fill_missing(payment_reference, columns)

        return self.get_by_reference(payment_reference), created

    def _fill_missing(self, payment_reference: str, columns: Dict) -> None:
        values = {}
        for name in _FILLABLE:
            if name in columns:
                column = getattr(Booking, name)
                values[name] = func.coalesce(column, literal(columns[name], column.type))
        if columns.get("is_mobile_flow"):
            values["is_mobile_flow"] = True
        if not values:
            return
        values["updated_at"] = utcnow()
        try:
            with self._transaction() as db:
                db.execute(
                    update(Booking)
                    .where(Booking.payment_reference == payment_reference)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
        except IntegrityError:
            if "session_reference" not in columns:
                raise
            logger.warning(f"Session reference conflict while updating payment {payment_reference}")
            self._fill_missing(
                payment_reference, {k: v for k, v in columns.items() if k != "session_reference"}
            )

    # -- conditional updates -------------------------------------------

    def advance_status(self, payment_reference: str, status: str) -> bool:
        """Move a booking out of ``processing``. Returns False if it was already terminal."""
        if status not in PaymentStatus.TERMINAL:
            return False
        with self._transaction() as db:
            result = db.execute(
                update(Booking)
                .where(
                    Booking.payment_reference == payment_reference,
                    Booking.payment_status == PaymentStatus.PROCESSING,
                )
                .values(payment_status=status, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def claim_notification(
        self,
        payment_reference: str,
        kind: str,
        *,
        now: datetime,
        lease: timedelta,
        force: bool = False,
    ) -> bool:
        """Take the exclusive right to send one notification.

        Succeeds only for a succeeded booking whose flag is still unset and whose
        previous claim is absent or older than ``lease``. With ``force`` the flag
        and status conditions are dropped, but the claim itself stays exclusive.
        """
        flag, claim, _ = NOTIFICATION_FIELDS[kind]
        claim_column = getattr(Booking, claim)
        conditions = [
            Booking.payment_reference == payment_reference,
            or_(claim_column.is_(None), claim_column < now - lease),
        ]
        if not force:
            conditions.append(getattr(Booking, flag) == False)  # noqa: E712
            conditions.append(Booking.payment_status == PaymentStatus.SUCCEEDED)
        with self._transaction() as db:
            result = db.execute(
                update(Booking)
                .where(*conditions)
                .values(**{claim: now})
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def complete_notification(self, payment_reference: str, kind: str, message_id: Optional[str]) -> None:
        flag, claim, message_column = NOTIFICATION_FIELDS[kind]
        with self._transaction() as db:
            db.execute(
                update(Booking)
                .where(Booking.payment_reference == payment_reference)
                .values(**{flag: True, claim: None, message_column: message_id, "updated_at": utcnow()})
                .execution_options(synchronize_session=False)
            )

    def release_notification(self, payment_reference: str, kind: str) -> None:
        _, claim, _ = NOTIFICATION_FIELDS[kind]
        with self._transaction() as db:
            db.execute(
                update(Booking)
                .where(Booking.payment_reference == payment_reference)
                .values(**{claim: None})
                .execution_options(synchronize_session=False)
            )

    def claim_inventory_decrement(self, payment_reference: str) -> Optional[List[str]]:
        """Decrement inventory for a succeeded booking, once.

        Returns None when another call already did it (or there is nothing to
        decrement yet), otherwise the option ids whose remaining count went negative.
        """
        with self._transaction() as db:
            result = db.execute(
                update(Booking)
                .where(
                    Booking.payment_reference == payment_reference,
                    Booking.payment_status == PaymentStatus.SUCCEEDED,
                    Booking.inventory_decremented == False,  # noqa: E712
                    Booking.accommodations.is_not(None),
                )
                .values(inventory_decremented=True)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None

            accommodations = db.execute(
                select(Booking.accommodations).where(Booking.payment_reference == payment_reference)
            ).scalar_one()
            oversold = []
            for option_id, selection in (accommodations or {}).items():
                quantity = int(selection.get("quantity") or 0) if selection.get("selected") else 0
                if quantity <= 0:
                    continue
                db.execute(
                    update(InventoryItem)
                    .where(InventoryItem.option_id == option_id)
                    .values(remaining=InventoryItem.remaining - quantity)
                    .execution_options(synchronize_session=False)
                )
                remaining = db.execute(
                    select(InventoryItem.remaining).where(InventoryItem.option_id == option_id)
                ).scalar_one_or_none()
                if remaining is None:
                    logger.warning(f"No inventory tracked for accommodation option {option_id}")
                elif remaining < 0:
                    oversold.append(option_id)
            return oversold

    def override_status(self, booking_id: int, status: str) -> Optional[BookingRecord]:
        with self._transaction() as db:
            booking = db.get(Booking, booking_id)
            if booking is None:
                return None
            booking.payment_status = status
            db.flush()
            return BookingRecord.model_validate(booking)

    # -- inventory --------------------------------------------------------

    def seed_inventory(self, capacities: Dict[str, int]) -> None:
        for option_id, capacity in capacities.items():
            try:
                with self._transaction() as db:
                    db.add(InventoryItem(option_id=option_id, capacity=capacity, remaining=capacity))
            except IntegrityError:
                continue

    def get_inventory(self) -> List[InventoryItem]:
        with self._transaction() as db:
            return list(db.execute(select(InventoryItem).order_by(InventoryItem.option_id)).scalars())

    # -- reads ----------------------------------------------------------

    def _one(self, *criteria) -> Optional[BookingRecord]:
        with self._transaction() as db:
            booking = db.execute(select(Booking).where(*criteria)).scalar_one_or_none()
            return BookingRecord.model_validate(booking) if booking else None

    def _many(self, *criteria, limit: Optional[int] = None) -> List[BookingRecord]:
        stmt = select(Booking).where(*criteria).order_by(Booking.created_at.desc(), Booking.id.desc())
        if limit:
            stmt = stmt.limit(limit)
        with self._transaction() as db:
            return [BookingRecord.model_validate(b) for b in db.execute(stmt).scalars()]

    def get_by_id(self, booking_id: int) -> Optional[BookingRecord]:
        return self._one(Booking.id == booking_id)

    def get_by_reference(self, payment_reference: str) -> Optional[BookingRecord]:
        return self._one(Booking.payment_reference == payment_reference)

    def get_by_session(self, session_reference: str) -> Optional[BookingRecord]:
        return self._one(Booking.session_reference == session_reference)

    def list_bookings(self) -> List[BookingRecord]:
        return self._many()

    def list_by_email(self, email: str) -> List[BookingRecord]:
        return self._many(func.lower(Booking.email) == email.strip().lower())

    def list_pending_notifications(self, limit: int = 50) -> List[BookingRecord]:
        return self._many(
            Booking.payment_status == PaymentStatus.SUCCEEDED,
            or_(Booking.customer_email_sent == False, Booking.admin_notified == False),  # noqa: E712
            limit=limit,
        )
