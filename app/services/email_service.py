import html
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.errors import NotificationFailure
from app.schemas.booking import BookingRecord

logger = logging.getLogger(__name__)

BRAND = "Three Degrees East"
CURRENCY_SYMBOLS = {"gbp": "£", "usd": "$", "eur": "€"}


@dataclass
class NotificationResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class SesEmailSender:
    """Sends a single email through AWS SES."""

    def __init__(self, region: str, from_address: str, client=None):
        self.from_address = from_address
        self._client = client or boto3.client("ses", region_name=region)

    def send(self, *, to_addresses: Iterable[str], subject: str, html_body: str, text_body: str) -> str:
        message: Dict[str, Any] = {
            "Subject": {"Data": subject, "Charset": "UTF-8"},
            "Body": {
                "Html": {"Data": html_body, "Charset": "UTF-8"},
                "Text": {"Data": text_body, "Charset": "UTF-8"},
            },
        }
        try:
            resp = self._client.send_email(
                Source=f'"{BRAND}" <{self.from_address}>',
                Destination={"ToAddresses": list(to_addresses)},
                Message=message,
            )
        except ClientError as e:
            logger.error("SES ClientError: %s", e, exc_info=True)
            raise NotificationFailure(str(e)) from e
        except BotoCoreError as e:
            logger.error("SES BotoCoreError: %s", e, exc_info=True)
            raise NotificationFailure(str(e)) from e
        message_id = resp.get("MessageId")
        logger.info("SES send_email ok: MessageId=%s", message_id)
        return message_id


def format_money(amount_minor: Optional[int], currency: Optional[str]) -> str:
    if amount_minor is None:
        return "-"
    symbol = CURRENCY_SYMBOLS.get((currency or "").lower(), f"{(currency or '').upper()} ")
    return f"{symbol}{amount_minor / 100:,.2f}"


def booking_reference(booking: BookingRecord) -> str:
    return booking.payment_reference[:8].upper()


class NotificationService:
    """Renders and sends the customer confirmation and the admin alert.

    Transport failures come back as an unsuccessful ``NotificationResult``;
    the caller decides when to retry.
    """

    def __init__(self, sender, admin_emails: List[str], catalog: Dict[str, Dict[str, Any]]):
        self.sender = sender
        self.admin_emails = admin_emails
        self.catalog = catalog

    def _lines(self, booking: BookingRecord) -> List[Tuple[str, int, int]]:
        lines = []
        for option_id, selection in (booking.accommodations or {}).items():
            quantity = int(selection.get("quantity") or 0)
            if not selection.get("selected") or quantity <= 0:
                continue
            option = self.catalog.get(option_id, {"name": option_id, "price": 0})
            lines.append((option["name"], quantity, option["price"] * quantity))
        return lines

    def _deliver(self, kind: str, booking: BookingRecord, to: List[str], subject: str, html_body: str, text_body: str) -> NotificationResult:
        if not to:
            logger.warning(f"No recipient for {kind} email on booking {booking.payment_reference}")
            return NotificationResult(success=False, error="no recipient")
        try:
            message_id = self.sender.send(to_addresses=to, subject=subject, html_body=html_body, text_body=text_body)
        except NotificationFailure as e:
            return NotificationResult(success=False, error=str(e))
        return NotificationResult(success=True, message_id=message_id)

    def send_customer_confirmation(self, booking: BookingRecord) -> NotificationResult:
        date = booking.booking_date.strftime("%A, %B %d, %Y") if booking.booking_date else "-"
        lines = self._lines(booking)
        name = booking.full_name or "Guest"
        total = format_money(booking.total_amount, booking.currency)

        rows = "".join(
            f"<tr><td>{html.escape(n)}</td><td>{q}</td><td>{format_money(t, booking.currency)}</td></tr>"
            for n, q, t in lines
        )
        requirements_html = (
            f"<h3>Special Requirements:</h3><p>{html.escape(booking.special_requirements)}</p>"
            if booking.special_requirements
            else ""
        )
        html_body = f"""
<html><body>
<h1>Booking Confirmation</h1>
<p>Dear {html.escape(name)},</p>
<p>Thank you for your booking with {BRAND}. We're excited to have you join us!</p>
<p class="booking-ref">Booking Reference: <strong>{booking_reference(booking)}</strong></p>
<p>Date: {date}</p>
<table><tr><th>Accommodation</th><th>Quantity</th><th>Price</th></tr>{rows}</table>
<p class="total">Total Amount: {total}</p>
{requirements_html}
<h3>What's Next?</h3>
<p>We'll be in touch approximately 3 weeks before the retreat with additional information about the venue, schedule, and what to bring.</p>
</body></html>
"""
        text_lines = "\n".join(f"{n} x {q}: {format_money(t, booking.currency)}" for n, q, t in lines)
        requirements_text = (
            f"Special Requirements:\n{booking.special_requirements}\n" if booking.special_requirements else ""
        )
        text_body = (
            "Booking Confirmation\n====================\n\n"
            f"Dear {name},\n\n"
            f"Thank you for your booking with {BRAND}. We're excited to have you join us!\n\n"
            f"Booking Reference: {booking_reference(booking)}\n"
            f"Date: {date}\n\n"
            f"Your Booking Details:\n--------------------\n{text_lines}\n\n"
            f"Total Amount: {total}\n\n"
            f"{requirements_text}"
            f"This email was sent to {booking.email}.\n"
        )
        to = [booking.email] if booking.email else []
        return self._deliver(
            "customer", booking, to, f"Your {BRAND} Booking Confirmation", html_body, text_body
        )

    def send_admin_alert(self, booking: BookingRecord) -> NotificationResult:
        date = booking.booking_date.strftime("%A, %B %d, %Y") if booking.booking_date else "-"
        lines = "\n".join(f"{n} x {q}: {format_money(t, booking.currency)}" for n, q, t in self._lines(booking))
        text_body = (
            "New Booking Alert\n================\n\n"
            f"A new booking has been received on {BRAND}.\n\n"
            f"Reference: {booking_reference(booking)}\n"
            f"Payment ID: {booking.payment_reference}\n"
            f"Date: {date}\n"
            f"Customer: {booking.full_name or '-'}\n"
            f"Email: {booking.email or '-'}\n"
            f"Phone: {booking.phone or '-'}\n"
            f"Amount: {format_money(booking.total_amount, booking.currency)}\n"
            f"Payment Status: Paid\n"
            f"Mobile flow: {'yes' if booking.is_mobile_flow else 'no'}\n\n"
            f"{lines}\n"
        )
        if booking.special_requirements:
            text_body += f"\nSpecial Requirements:\n{booking.special_requirements}\n"
        html_body = "<html><body><pre>" + html.escape(text_body) + "</pre></body></html>"
        return self._deliver(
            "admin", booking, list(self.admin_emails), f"New Booking Notification - {BRAND}", html_body, text_body
        )
