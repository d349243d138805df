from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text
from sqlalchemy.orm import declarative_base
import datetime

Base = declarative_base()


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class PaymentStatus:
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    TERMINAL = (SUCCEEDED, FAILED)
    ALL = (PROCESSING, SUCCEEDED, FAILED)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)

    # Guest details may arrive after the row exists (webhook-first settlement)
    full_name = Column(String)
    email = Column(String, index=True)
    phone = Column(String)
    accommodations = Column(JSON(none_as_null=True))
    special_requirements = Column(Text)
    total_amount = Column(Integer)  # minor units
    currency = Column(String(8))

    payment_reference = Column(String, unique=True, nullable=False, index=True)
    payment_status = Column(String(16), nullable=False, default=PaymentStatus.PROCESSING)
    session_reference = Column(String, unique=True, nullable=True)
    is_mobile_flow = Column(Boolean, nullable=False, default=False)

    customer_email_sent = Column(Boolean, nullable=False, default=False)
    customer_email_claimed_at = Column(DateTime, nullable=True)
    customer_email_message_id = Column(String, nullable=True)
    admin_notified = Column(Boolean, nullable=False, default=False)
    admin_notify_claimed_at = Column(DateTime, nullable=True)
    admin_message_id = Column(String, nullable=True)
    inventory_decremented = Column(Boolean, nullable=False, default=False)

    booking_date = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class InventoryItem(Base):
    __tablename__ = "inventory"

    option_id = Column(String, primary_key=True)
    capacity = Column(Integer, nullable=False)
    remaining = Column(Integer, nullable=False)
