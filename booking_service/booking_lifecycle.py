"""
Booking lifecycle: the state machine and the ordering of writes across the
relational store, the search index, the payment provider and email.

The relational store is the source of truth. Mirror writes travel through the
outbox and notifications are best effort: once the relational commit has
succeeded, failures in either are logged and never undo it. Payment provider
and database errors abort the operation where they happen.
"""

import logging
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from . import crud
from .errors import BookingNotFound, BookingServiceError, InvalidTransition, OwnershipViolation, VendorNotFound
from .models import BookingState, PaymentState, UserRole
from .notifications import (
    NotificationAction,
    NotificationDispatcher,
    Recipient,
    booking_context,
    payment_context,
    payment_status_actions,
    status_actions,
)
from .outbox_poller import dispatch_events
from .payments import PROVIDER_NAME
from .pricing import charge_amount
from .projections import BOOKINGS
from .schemas import Actor, BookingCreate, BookingUpdate, CardDetails, PaymentCreate
from .search_index import SearchIndex

logger = logging.getLogger("booking_service")

ALLOWED_TRANSITIONS = {
    BookingState.PENDING: {
        BookingState.APPROVED_VENDOR,
        BookingState.DECLINED_VENDOR,
        BookingState.DECLINED_ADMIN,
    },
    BookingState.APPROVED_VENDOR: {BookingState.COMPLETED},
}


def check_transition(current: BookingState, new: Optional[BookingState]) -> None:
    """Raise InvalidTransition unless current -> new is an allowed move (or no move)."""
    if new is None or new == current:
        return
    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Cannot move booking from '{current.value}' to '{new.value}'")


def _restrict(query: str, clause: str) -> str:
    return clause if query == "" else f"{query} AND {clause}"


class BookingLifecycle:
    def __init__(self, db: Session, index: SearchIndex, dispatcher: NotificationDispatcher,
                 payments, currency: str = "gbp",
                 fee_settings: Callable[[Session], crud.FeeSnapshot] = crud.get_fee_settings):
        self.db = db
        self.index = index
        self.dispatcher = dispatcher
        self.payments = payments
        self.currency = currency
        self.fee_settings = fee_settings

    # --- helpers ---

    async def _project(self, event_ids: List[int]) -> None:
        """Apply freshly queued mirror writes now; the poller retries what fails."""
        try:
            await dispatch_events(self.db, self.index, event_ids=event_ids, limit=len(event_ids))
        except Exception as e:
            logger.error(f"Search mirror update deferred to the outbox poller: {e}")
            self.db.rollback()

    def _parties(self, booking: Dict[str, Any]):
        customer = crud.get_user(self.db, booking["customer_id"])
        vendor = crud.get_vendor(self.db, booking["vendor_id"])
        return customer, vendor, vendor.profile

    def _booking_messages(self, actions, booking: Dict[str, Any]) -> List[Tuple[str, Dict[str, Any]]]:
        if not actions:
            return []
        customer, vendor, vendor_user = self._parties(booking)
        people = {Recipient.CUSTOMER: customer, Recipient.VENDOR: vendor_user}
        return [
            (action.template, booking_context(booking, vendor.name, people[action.recipient]))
            for action in actions
        ]

    def _check_owner(self, booking: Dict[str, Any], actor: Actor) -> None:
        if actor.role == UserRole.CUSTOMER and booking["customer_id"] != actor.id:
            raise OwnershipViolation()
        if actor.role == UserRole.VENDOR:
            try:
                vendor = crud.get_vendor_by_user_id(self.db, actor.id)
            except VendorNotFound:
                raise OwnershipViolation()
            if vendor.id != booking["vendor_id"]:
                raise OwnershipViolation()

    def authorize(self, booking_id: str, actor: Actor, allow_vendor: bool = True) -> Dict[str, Any]:
        """Owner and admin always pass; the assigned vendor only when allow_vendor."""
        booking = crud.get_booking_filled(self.db, booking_id)
        if actor.role == UserRole.VENDOR and not allow_vendor:
            raise OwnershipViolation()
        self._check_owner(booking, actor)
        return booking

    # --- bookings ---

    async def create(self, actor: Actor, payload: BookingCreate) -> Dict[str, Any]:
        fees = self.fee_settings(self.db)
        mutation = crud.create_booking(self.db, payload, customer_id=actor.id, fees=fees)
        booking = mutation.booking
        logger.info(f"Booking {booking['id']} created by {actor.id}")

        await self._project(mutation.event_ids)

        # Sent straight away rather than through send_status_notification
        try:
            messages = self._booking_messages(
                (
                    NotificationAction(Recipient.VENDOR, "vendor_booking_received"),
                    NotificationAction(Recipient.CUSTOMER, "booking_received"),
                ),
                booking,
            )
        except Exception as e:
            logger.error(f"Booking {booking['id']} committed but its notifications could not be built: {e}")
            return booking
        await self.dispatcher.dispatch(messages)
        return booking

    async def get_one(self, booking_id: str, actor: Actor) -> Dict[str, Any]:
        booking = crud.get_booking_filled(self.db, booking_id)
        self._check_owner(booking, actor)
        return booking

    async def update(self, booking_id: str, data: BookingUpdate, actor_id: Optional[str] = None) -> Dict[str, Any]:
        current = crud.get_booking(self.db, booking_id)
        check_transition(current.state, data.state)

        mutation = crud.update_booking(self.db, booking_id, data)
        logger.info(f"Booking {booking_id} updated by {actor_id}")
        # Only the booking document is refreshed; user aggregates are untouched
        await self._project(mutation.event_ids)
        return mutation.booking

    async def remove(self, booking_id: str, actor_id: Optional[str] = None) -> Dict[str, str]:
        mutation = crud.remove_booking(self.db, booking_id)
        logger.info(f"Booking {booking_id} removed by {actor_id}")
        await self._project(mutation.event_ids)
        return {"message": "Booking has been successfully removed."}

    async def search(self, query: Optional[str], limit: int, offset: int, actor: Actor) -> Dict[str, Any]:
        query = (query or "").strip()
        if actor.role == UserRole.CUSTOMER:
            query = _restrict(query, f'customer.id:"{actor.id}"')
        elif actor.role == UserRole.VENDOR:
            vendor = crud.get_vendor_by_user_id(self.db, actor.id)
            query = _restrict(query, f'vendor.id:"{vendor.id}"')

        docs, total = await self.index.query(BOOKINGS, query, limit, offset)

        results = []
        for doc in docs:
            if not doc.get("id"):
                continue
            try:
                results.append(crud.get_booking_filled(self.db, doc["id"]))
            except BookingServiceError as e:
                logger.error(f"Dropping search hit {doc['id']}: {e}")

        paging = {
            "limit": limit,
            "offset": offset,
            "next": offset + limit if offset + limit < total else None,
            "previous": max(offset - limit, 0) if offset > 0 else None,
        }
        return {"totalRecords": total, "results": results, "paging": paging}

    # --- payments ---

    async def get_payments(self, booking_id: str, actor: Actor):
        await self.get_one(booking_id, actor)
        return crud.get_payments_by_booking(self.db, booking_id)

    async def get_one_payment(self, booking_id: str, payment_id: str):
        payment = crud.get_payment(self.db, payment_id)
        if payment.booking_id != booking_id:
            raise BookingNotFound()
        return payment

    async def insert_payment(self, booking_id: str, data: PaymentCreate, actor: Actor):
        booking = crud.get_booking_filled(self.db, booking_id)
        amount = charge_amount(booking["total"], booking["service_fee"])

        # Charge first: a provider failure leaves nothing behind
        transaction = await self.payments.create_transaction(amount, self.currency, data.card_token)
        try:
            payment = crud.create_payment(
                self.db,
                booking_id,
                total=transaction.amount,
                currency=self.currency,
                provider={"name": PROVIDER_NAME, "id": transaction.id},
            )
        except Exception:
            self.db.rollback()
            logger.error(
                f"Charge {transaction.id} of {transaction.amount} for booking {booking_id} "
                f"has no payment record and needs reconciliation"
            )
            raise
        logger.info(f"Payment {payment.id} recorded for booking {booking_id} by {actor.id}")
        return payment

    async def accept_payment(self, booking_id: str, payment_id: str) -> Dict[str, Any]:
        booking = crud.get_booking(self.db, booking_id)
        payment = await self.get_one_payment(booking_id, payment_id)
        check_transition(booking.state, BookingState.APPROVED_VENDOR)

        await self.payments.capture_transaction(payment.provider["id"])
        try:
            await self.update(booking_id, BookingUpdate(state=BookingState.APPROVED_VENDOR))
            crud.update_payment_state(self.db, payment_id, PaymentState.APPROVED)
        except Exception:
            self.db.rollback()
            logger.error(
                f"Charge {payment.provider['id']} captured but booking {booking_id} / "
                f"payment {payment_id} were not updated"
            )
            raise
        return crud.get_booking_filled(self.db, booking_id)

    async def decline_payment(self, booking_id: str, payment_id: str) -> Dict[str, Any]:
        # The payment itself keeps its state here
        booking = crud.get_booking(self.db, booking_id)
        await self.update(booking_id, BookingUpdate(state=BookingState.DECLINED_VENDOR), booking.customer_id)
        return crud.get_booking_filled(self.db, booking_id)

    async def create_token(self, card: CardDetails) -> str:
        return await self.payments.create_token(card.model_dump())

    # --- notifications ---

    async def send_status_notification(self, booking_id: str) -> Dict[str, Any]:
        booking = crud.get_booking_filled(self.db, booking_id)
        messages = self._booking_messages(status_actions(booking["state"]), booking)
        deliveries = await self.dispatcher.dispatch(messages)
        logger.debug(f"Status notification for {booking_id} ({booking['state'].value}): {deliveries}")
        return {"message": "Booking status email been sent.", "deliveries": [asdict(d) for d in deliveries]}

    async def send_payment_status_notification(self, booking_id: str, payment_id: str) -> Dict[str, Any]:
        booking = crud.get_booking_filled(self.db, booking_id)
        payment = await self.get_one_payment(booking_id, payment_id)

        actions = payment_status_actions(payment.state)
        messages = []
        if actions:
            customer, _, vendor_user = self._parties(booking)
            people = {Recipient.CUSTOMER: customer, Recipient.VENDOR: vendor_user}
            messages = [
                (action.template, payment_context(payment, people[action.recipient]))
                for action in actions
            ]
        deliveries = await self.dispatcher.dispatch(messages)
        return {"message": "Payment status email been sent.", "deliveries": [asdict(d) for d in deliveries]}
