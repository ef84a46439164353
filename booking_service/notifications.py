"""
Templated email notifications for bookings and payments.

Which templates go out is decided purely from the booking (or payment) state;
the mail API client only delivers them.
"""

import asyncio
import datetime
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

import httpx
from dateutil import parser as date_parser

from .errors import DeliveryError
from .models import BookingState, PaymentState

logger = logging.getLogger("notifications")


class Recipient(str, Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"


class NotificationAction(NamedTuple):
    recipient: Recipient
    template: str


_CUSTOMER = Recipient.CUSTOMER
_VENDOR = Recipient.VENDOR

STATUS_TEMPLATES: Dict[BookingState, Tuple[NotificationAction, ...]] = {
    BookingState.BOOKED: (
        NotificationAction(_CUSTOMER, "booking_confirmed"),
    ),
    BookingState.PENDING: (
        NotificationAction(_CUSTOMER, "booking_received"),
        NotificationAction(_VENDOR, "vendor_booking_received"),
    ),
    BookingState.APPROVED_VENDOR: (
        NotificationAction(_CUSTOMER, "booking_accepted"),
        NotificationAction(_VENDOR, "vendor_booking_confirmed"),
    ),
    # Nothing is sent for completed bookings
    BookingState.COMPLETED: (),
    BookingState.DECLINED_VENDOR: (
        NotificationAction(_CUSTOMER, "booking_rejected"),
    ),
    BookingState.DECLINED_ADMIN: (
        NotificationAction(_CUSTOMER, "booking_rejected_by_admin"),
        NotificationAction(_VENDOR, "vendor_booking_rejected_by_admin"),
    ),
}

PAYMENT_TEMPLATES: Dict[str, Tuple[NotificationAction, ...]] = {
    PaymentState.APPROVED.value: (
        NotificationAction(_CUSTOMER, "payment_taken"),
        NotificationAction(_VENDOR, "payment_taken"),
    ),
    # Payments approved through the booking flow are also reported by the booking state name
    BookingState.APPROVED_VENDOR.value: (
        NotificationAction(_CUSTOMER, "payment_taken"),
        NotificationAction(_VENDOR, "payment_taken"),
    ),
    PaymentState.DECLINED.value: (
        NotificationAction(_CUSTOMER, "payment_failed"),
        NotificationAction(_VENDOR, "payment_failed"),
    ),
}


def status_actions(state) -> Tuple[NotificationAction, ...]:
    """Templates to send for a booking in the given state."""
    return STATUS_TEMPLATES[BookingState(state)]


def payment_status_actions(state) -> Tuple[NotificationAction, ...]:
    key = state.value if isinstance(state, Enum) else str(state)
    return PAYMENT_TEMPLATES.get(key, ())


# --- Template context ---

def parse_event_date(value: Any) -> Optional[datetime.datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, datetime.date):
        return datetime.datetime.combine(value, datetime.time())
    try:
        return date_parser.parse(str(value))
    except (ValueError, OverflowError):
        logger.warning(f"Unreadable event date {value!r}; leaving it out of the message")
        return None


def until_days(event_date: Any, now: Optional[datetime.datetime] = None) -> Optional[int]:
    """Whole days from now to the event, rounded down. Negative for past events."""
    when = parse_event_date(event_date)
    if when is None:
        return None
    if now is None:
        now = datetime.datetime.now(datetime.timezone.utc)
    if when.tzinfo is None:
        when = when.replace(tzinfo=datetime.timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=datetime.timezone.utc)
    return math.floor((when - now).total_seconds() / 86400)


def _ordinal(day: int) -> str:
    if 10 <= day % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
    return f"{day}{suffix}"


def format_event_date(event_date: Any) -> str:
    """e.g. 'Friday, June 5th 2026, 7:30:00 pm'"""
    when = parse_event_date(event_date)
    if when is None:
        return ""
    hour = when.hour % 12 or 12
    meridiem = "am" if when.hour < 12 else "pm"
    return (
        f"{when.strftime('%A, %B')} {_ordinal(when.day)} {when.year}, "
        f"{hour}:{when.minute:02d}:{when.second:02d} {meridiem}"
    )


def booking_context(booking: Dict[str, Any], vendor_name: str, person,
                    now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
    event_date = (booking.get("timings") or {}).get("date")
    state = booking["state"]
    return {
        "receiver": person.email,
        "username": person.full_name,
        "booking_id": booking["id"],
        "datetime": format_event_date(event_date),
        "vendor": vendor_name,
        "state": state.value if isinstance(state, Enum) else state,
        "until": until_days(event_date, now),
    }


def payment_context(payment, person) -> Dict[str, Any]:
    return {
        "receiver": person.email,
        "username": person.full_name,
        "id": payment.id,
        "total": float(payment.total),
        "state": payment.state.value,
        "provider": payment.provider,
    }


# --- Delivery ---

class MailClient:
    """Sends stored templates through a Mandrill-style HTTP API."""

    def __init__(self, base_url: str, api_key: str, timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def send(self, template: str, context: Dict[str, Any]) -> Any:
        receiver = context.get("receiver")
        payload = {
            "key": self.api_key,
            "template_name": template,
            "template_content": [],
            "message": {
                "to": [{"email": receiver, "name": context.get("username"), "type": "to"}],
                "merge_language": "handlebars",
                "global_merge_vars": [
                    {"name": key, "content": value} for key, value in context.items()
                ],
            },
        }
        try:
            response = await self._client.post("/messages/send-template.json", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DeliveryError(f"Failed to send '{template}' to {receiver}: {e}") from e
        try:
            return response.json()
        except ValueError as e:
            raise DeliveryError(
                f"Unreadable response sending '{template}' to {receiver}: HTTP {response.status_code}"
            ) from e

    async def aclose(self):
        await self._client.aclose()


@dataclass
class DeliveryReport:
    template: str
    receiver: str
    sent: bool
    error: Optional[str] = None


class NotificationDispatcher:
    def __init__(self, mail_client: MailClient):
        self.mail_client = mail_client

    async def notify(self, template: str, context: Dict[str, Any]) -> Any:
        receipt = await self.mail_client.send(template, context)
        logger.info(f"Sent '{template}' to {context.get('receiver')}")
        return receipt

    async def _deliver(self, template: str, context: Dict[str, Any]) -> DeliveryReport:
        receiver = context.get("receiver") or ""
        try:
            await self.notify(template, context)
        except DeliveryError as e:
            logger.error(f"Notification '{template}' to {receiver} failed: {e}")
            return DeliveryReport(template, receiver, sent=False, error=e.message)
        except Exception as e:
            logger.exception(f"Notification '{template}' to {receiver} failed unexpectedly")
            return DeliveryReport(template, receiver, sent=False, error=str(e))
        return DeliveryReport(template, receiver, sent=True)

    async def dispatch(self, messages: List[Tuple[str, Dict[str, Any]]]) -> List[DeliveryReport]:
        """
        Send every (template, context) pair. Failures are logged and reported,
        never raised, and are not retried.
        """
        if not messages:
            return []
        return list(await asyncio.gather(*(self._deliver(t, c) for t, c in messages)))
