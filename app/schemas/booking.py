from pydantic import BaseModel, Field, AliasChoices
from typing import Optional, Dict, Any, Literal
from datetime import datetime
from decimal import Decimal
from pydantic import ConfigDict

EMAIL_PATTERN = r"^\S+@\S+\.\S+$"

PaymentStatusLiteral = Literal["processing", "succeeded", "failed"]


class AccommodationSelection(BaseModel):
    selected: bool = False
    quantity: int = Field(0, ge=0)


class CustomerInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class BookingDetailsIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    full_name: str = Field(..., alias="fullName", min_length=1)
    email: str = Field(..., pattern=EMAIL_PATTERN)
    mobile: str = Field(..., min_length=1)
    accommodations: Dict[str, AccommodationSelection] = Field(default_factory=dict)
    special_requirements: Optional[str] = Field(None, alias="specialRequirements")


class CreatePaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Decimal = Field(..., gt=0)
    payment_method_ref: str = Field(
        ...,
        validation_alias=AliasChoices("paymentMethodRef", "paymentMethodId", "payment_method_ref"),
    )
    customer_info: Optional[CustomerInfo] = Field(None, alias="customerInfo")
    booking_details: BookingDetailsIn = Field(..., alias="bookingDetails")
    is_mobile: bool = Field(False, alias="isMobile")


class SetupPaymentIntentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Decimal = Field(..., gt=0)
    customer_info: Optional[CustomerInfo] = Field(None, alias="customerInfo")
    booking_details: BookingDetailsIn = Field(..., alias="bookingDetails")


class SetupPaymentIntentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    client_secret: str = Field(..., alias="clientSecret")
    payment_intent_id: str = Field(..., alias="paymentIntentId")


class ClientStatusReport(BaseModel):
    """Final status the mobile client observed after confirming with the provider."""

    model_config = ConfigDict(populate_by_name=True)

    payment_intent_id: str = Field(..., alias="paymentIntentId", min_length=1)
    status: str
    amount: Optional[Decimal] = Field(None, gt=0)
    booking_details: Optional[BookingDetailsIn] = Field(None, alias="bookingDetails")


class SettlementDetails(BaseModel):
    """Booking attributes a settlement may contribute. Missing values never erase stored ones."""

    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    accommodations: Optional[Dict[str, Any]] = None
    special_requirements: Optional[str] = None
    total_amount: Optional[int] = None
    currency: Optional[str] = None
    session_reference: Optional[str] = None
    is_mobile_flow: Optional[bool] = None

    @classmethod
    def from_booking_details(cls, details: BookingDetailsIn, **extra) -> "SettlementDetails":
        return cls(
            full_name=details.full_name,
            email=details.email.strip().lower(),
            phone=details.mobile,
            accommodations={k: v.model_dump() for k, v in details.accommodations.items()},
            special_requirements=details.special_requirements,
            **extra,
        )

    def to_columns(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class BookingRecord(BaseModel):
    """Full stored snapshot of a booking, including bookkeeping flags."""

    id: int
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    accommodations: Optional[Dict[str, Any]] = None
    special_requirements: Optional[str] = None
    total_amount: Optional[int] = None
    currency: Optional[str] = None
    payment_reference: str
    payment_status: PaymentStatusLiteral
    session_reference: Optional[str] = None
    is_mobile_flow: bool = False
    customer_email_sent: bool = False
    admin_notified: bool = False
    inventory_decremented: bool = False
    booking_date: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BookingSummary(BaseModel):
    """Public view of a booking; internal bookkeeping flags are not exposed."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    full_name: Optional[str] = Field(None, alias="fullName")
    email: Optional[str] = None
    mobile: Optional[str] = None
    accommodations: Optional[Dict[str, Any]] = None
    special_requirements: Optional[str] = Field(None, alias="specialRequirements")
    payment_id: str = Field(..., alias="paymentId")
    payment_status: PaymentStatusLiteral = Field(..., alias="paymentStatus")
    total: Optional[float] = None
    currency: Optional[str] = None
    booking_date: Optional[datetime] = Field(None, alias="bookingDate")

    @classmethod
    def from_record(cls, record: BookingRecord) -> "BookingSummary":
        return cls(
            id=record.id,
            full_name=record.full_name,
            email=record.email,
            mobile=record.phone,
            accommodations=record.accommodations,
            special_requirements=record.special_requirements,
            payment_id=record.payment_reference,
            payment_status=record.payment_status,
            total=record.total_amount / 100 if record.total_amount is not None else None,
            currency=record.currency,
            booking_date=record.booking_date,
        )


class BookingSummaryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    booking_summary: BookingSummary = Field(..., alias="bookingSummary")


class AdminBookingView(BookingSummary):
    """Admin view adds the notification bookkeeping."""

    customer_email_sent: bool = Field(False, alias="customerEmailSent")
    admin_notified: bool = Field(False, alias="adminNotified")
    is_mobile_flow: bool = Field(False, alias="isMobileFlow")
    session_reference: Optional[str] = Field(None, alias="sessionReference")

    @classmethod
    def from_record(cls, record: BookingRecord) -> "AdminBookingView":
        summary = BookingSummary.from_record(record)
        return cls(
            **summary.model_dump(),
            customer_email_sent=record.customer_email_sent,
            admin_notified=record.admin_notified,
            is_mobile_flow=record.is_mobile_flow,
            session_reference=record.session_reference,
        )


class StatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_status: PaymentStatusLiteral = Field(..., alias="paymentStatus")


class EmailLookup(BaseModel):
    email: str = Field(..., pattern=EMAIL_PATTERN)


class InventoryView(BaseModel):
    option_id: str
    capacity: int
    remaining: int

    model_config = ConfigDict(from_attributes=True)
