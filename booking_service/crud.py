import json
import logging
from decimal import Decimal
from typing import Any, Dict, List, NamedTuple, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models, schemas, projections
from .config import settings
from .errors import (
    BookingNotFound,
    DuplicateError,
    PaymentNotFound,
    UserNotFound,
    ValidationError,
    VendorNotFound,
)
from .pricing import booking_total, dietary_tags, event_type

logger = logging.getLogger("booking_service")


class FeeSnapshot(NamedTuple):
    commission_fee: Decimal
    service_fee: Decimal


class Mutation(NamedTuple):
    """A committed change: the filled booking and the outbox events it queued."""
    booking: Dict[str, Any]
    event_ids: List[int]


# --- Outbox ---

def enqueue_event(db: Session, topic: str, payload: Dict[str, Any]) -> models.OutboxEvent:
    """
    Adds a PENDING outbox event to the session.
    Note: Does NOT commit. The caller commits it together with its own change.
    """
    db_outbox_event = models.OutboxEvent(
        topic=topic,
        payload=json.dumps(payload, default=str),
        status="PENDING"
    )
    db.add(db_outbox_event)
    db.flush()
    return db_outbox_event


def get_pending_events(db: Session, limit: int = 100, event_ids: Optional[List[int]] = None):
    query = db.query(models.OutboxEvent).filter(models.OutboxEvent.status == "PENDING")
    if event_ids is not None:
        query = query.filter(models.OutboxEvent.id.in_(event_ids))
    return query.order_by(models.OutboxEvent.id).limit(limit).with_for_update(skip_locked=True).all()


# --- Settings ---

def get_fee_settings(db: Session) -> FeeSnapshot:
    """Current global fees, read as one snapshot."""
    rows = {
        row.key: row.value
        for row in db.query(models.Setting).filter(
            models.Setting.key.in_(["commission_fee", "service_fee"])
        )
    }
    return FeeSnapshot(
        commission_fee=Decimal(rows.get("commission_fee", settings.DEFAULT_COMMISSION_FEE)),
        service_fee=Decimal(rows.get("service_fee", settings.DEFAULT_SERVICE_FEE)),
    )


def set_fee_settings(db: Session, commission_fee=None, service_fee=None) -> FeeSnapshot:
    for key, value in (("commission_fee", commission_fee), ("service_fee", service_fee)):
        if value is not None:
            db.merge(models.Setting(key=key, value=str(value)))
    db.commit()
    return get_fee_settings(db)


# --- Users and vendors ---

def get_user(db: Session, user_id: str) -> models.User:
    db_user = db.query(models.User).filter(models.User.id == user_id).first()
    if db_user is None:
        raise UserNotFound()
    return db_user


def create_user(db: Session, user: schemas.UserCreate) -> tuple[models.User, List[int]]:
    """Creates a user and queues its search document in the same commit."""
    db_user = models.User(
        email=user.email,
        type=user.type,
        first_name=user.first_name,
        last_name=user.last_name,
        phone=user.phone,
    )
    try:
        db.add(db_user)
        db.flush()
        event = enqueue_event(db, projections.USER_INDEX, projections.user_document(db_user))
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateError("Email already in use")
    db.refresh(db_user)
    return db_user, [event.id]


def set_payment_customer(db: Session, user_id: str, customer_id: str) -> models.User:
    db_user = get_user(db, user_id)
    db_user.customer_id = customer_id
    db.commit()
    db.refresh(db_user)
    return db_user


def update_user(db: Session, user_id: str, user: schemas.UserUpdate) -> tuple[models.User, List[int]]:
    """Applies the given fields and queues a partial search document with just those fields."""
    db_user = get_user(db, user_id)
    data = user.model_dump(exclude_unset=True)
    for key, value in data.items():
        setattr(db_user, key, value)
    try:
        db.flush()
        event = enqueue_event(db, projections.USER_INDEX, projections.user_document(db_user, changed=data))
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateError("Email already in use")
    db.refresh(db_user)
    return db_user, [event.id]


def remove_user(db: Session, user_id: str) -> List[int]:
    """
    Hard-deletes a user and its vendor profile, queuing the removal of its
    search document in the same commit. Users with bookings are kept.
    """
    db_user = get_user(db, user_id)
    db_vendor = db.query(models.Vendor).filter(models.Vendor.user_id == user_id).first()

    conditions = [models.Booking.customer_id == user_id]
    if db_vendor is not None:
        conditions.append(models.Booking.vendor_id == db_vendor.id)
    if db.query(models.Booking.id).filter(or_(*conditions)).first() is not None:
        raise ValidationError("User has bookings and cannot be removed")

    event = enqueue_event(db, projections.USER_UNINDEX, {"user_id": user_id})
    if db_vendor is not None:
        db.delete(db_vendor)
    db.delete(db_user)
    db.commit()
    return [event.id]


def get_users(db: Session, limit: int = 10, offset: int = 0) -> List[models.User]:
    return db.query(models.User).order_by(models.User.created, models.User.id).offset(offset).limit(limit).all()


def get_vendor(db: Session, vendor_id: str) -> models.Vendor:
    db_vendor = db.query(models.Vendor).filter(models.Vendor.id == vendor_id).first()
    if db_vendor is None:
        raise VendorNotFound()
    return db_vendor


def get_vendor_by_user_id(db: Session, user_id: str) -> models.Vendor:
    db_vendor = db.query(models.Vendor).filter(models.Vendor.user_id == user_id).first()
    if db_vendor is None:
        raise VendorNotFound()
    return db_vendor


def create_vendor(db: Session, vendor: schemas.VendorCreate) -> models.Vendor:
    get_user(db, vendor.user_id)
    db_vendor = models.Vendor(name=vendor.name, menu_price=vendor.menu_price, user_id=vendor.user_id)
    db.add(db_vendor)
    db.commit()
    db.refresh(db_vendor)
    return db_vendor


def create_tag(db: Session, name: str, pid: Optional[int] = None, tag_id: Optional[int] = None) -> models.Tag:
    db_tag = models.Tag(id=tag_id, name=name, pid=pid)
    db.add(db_tag)
    db.commit()
    db.refresh(db_tag)
    return db_tag


# --- Bookings ---

def _filled_tags(db_booking: models.Booking) -> List[Dict[str, Any]]:
    tags = []
    for link in db_booking.tag_links:
        tag = {"id": link.tag.id, "name": link.tag.name, "pid": link.tag.pid}
        # Per-booking fields (quantity, priceModifier, ...) sit on the association
        tag.update(link.additional_data or {})
        tags.append(tag)
    return tags


def fill_booking(db_booking: models.Booking) -> Dict[str, Any]:
    """Resolve vendor, customer, tags and payments, and derive the computed fields."""
    tags = _filled_tags(db_booking)
    payments = [schemas.PaymentRead.model_validate(p).model_dump() for p in db_booking.payments]
    return {
        "id": db_booking.id,
        "state": db_booking.state,
        "covers": db_booking.covers,
        "menuPrice": db_booking.menu_price,
        "commission_fee": db_booking.commission_fee,
        "service_fee": db_booking.service_fee,
        "timings": db_booking.timings,
        "location": db_booking.location,
        "logistics": db_booking.logistics,
        "eventType": event_type(tags),
        "dietary": {"tags": dietary_tags(tags), "notes": db_booking.dietary_notes},
        "tags": tags,
        "payment": [p["id"] for p in payments],
        "payments": payments,
        "total": booking_total(db_booking.covers, db_booking.menu_price, tags),
        "vendor_id": db_booking.vendor_id,
        "customer_id": db_booking.customer_id,
        "vendor": {"id": db_booking.vendor.id, "name": db_booking.vendor.name},
        "customer": {"id": db_booking.customer.id, "email": db_booking.customer.email},
        "created": db_booking.created,
        "updated": db_booking.updated,
    }


def get_booking(db: Session, booking_id: str) -> models.Booking:
    db_booking = db.query(models.Booking).filter(models.Booking.id == booking_id).first()
    if db_booking is None:
        raise BookingNotFound()
    return db_booking


def get_booking_filled(db: Session, booking_id: str) -> Dict[str, Any]:
    return fill_booking(get_booking(db, booking_id))


def _requested_tags(db_booking: models.Booking, booking: schemas.BookingBase) -> Optional[List[schemas.TagIn]]:
    """
    The tag set a payload asks for, or None when it carries no tags.
    A group missing from the payload (event type or dietary) keeps its current tags.
    """
    has_event = "event_type" in booking.model_fields_set
    has_dietary = booking.dietary is not None and "tags" in booking.dietary.model_fields_set
    if not (has_event or has_dietary):
        return None

    current = _filled_tags(db_booking)
    if has_event:
        event_tags = [booking.event_type] if booking.event_type is not None else []
    else:
        event_tags = [schemas.TagIn(id=t["id"]) for t in current if t["pid"] == models.EVENT_TAG_CATEGORY]
    if has_dietary:
        diet_tags = list(booking.dietary.tags)
    else:
        diet_tags = [schemas.TagIn(id=t["id"]) for t in current if t["pid"] == models.DIETARY_TAG_CATEGORY]

    requested: Dict[int, schemas.TagIn] = {}
    for tag in event_tags + diet_tags:
        requested.setdefault(tag.id, tag)
    return list(requested.values())


def save_tags(db: Session, db_booking: models.Booking, booking: schemas.BookingBase) -> None:
    """
    Replace the booking's tag set. Join fields sent with a tag replace the
    stored ones; a tag sent without any keeps what it had.
    """
    requested = _requested_tags(db_booking, booking)
    if requested is None:
        return

    known = {
        tag.id for tag in db.query(models.Tag).filter(models.Tag.id.in_([t.id for t in requested]))
    }
    unknown = [t.id for t in requested if t.id not in known]
    if unknown:
        raise ValidationError(f"Unknown tag id(s): {unknown}", details={"tags": unknown})

    existing = {link.tag_id: link for link in db_booking.tag_links}
    links = []
    for tag in requested:
        additional_data = dict(tag.model_extra or {})
        link = existing.get(tag.id)
        if link is None:
            link = models.BookingTag(tag_id=tag.id, additional_data=additional_data or None)
        elif additional_data:
            link.additional_data = additional_data
        links.append(link)
    db_booking.tag_links = links
    db.flush()
    db.expire(db_booking, ["tag_links"])


def create_booking(db: Session, booking: schemas.BookingCreate, customer_id: str, fees: FeeSnapshot) -> Mutation:
    """
    Atomically creates a new booking and the outbox events that mirror it.
    menuPrice and fees are copied now and never follow later changes.
    """
    vendor = get_vendor(db, booking.vendor_id)
    get_user(db, customer_id)

    db_booking = models.Booking(
        vendor_id=vendor.id,
        customer_id=customer_id,
        covers=booking.covers,
        menu_price=vendor.menu_price or 0,
        commission_fee=fees.commission_fee,
        service_fee=fees.service_fee,
        timings=booking.timings,
        location=booking.location,
        logistics=booking.logistics,
        dietary_notes=booking.dietary.notes if booking.dietary else None,
        state=models.BookingState.PENDING,
    )
    db.add(db_booking)
    db.flush()
    save_tags(db, db_booking, booking)

    filled = fill_booking(db_booking)
    created = projections.isoformat(filled["created"])
    events = [
        enqueue_event(db, projections.BOOKING_INDEX, projections.booking_document(filled)),
        enqueue_event(db, projections.USER_BOOKING_ADDED,
                      {"user_id": customer_id, "booking_id": db_booking.id, "date": created}),
        enqueue_event(db, projections.USER_BOOKING_ADDED,
                      {"user_id": vendor.user_id, "booking_id": db_booking.id, "date": created}),
    ]
    event_ids = [event.id for event in events]
    db.commit()
    return Mutation(filled, event_ids)


def update_booking(db: Session, booking_id: str, booking: schemas.BookingUpdate) -> Mutation:
    db_booking = get_booking(db, booking_id)
    # The vendor must still exist
    get_vendor(db, db_booking.vendor_id)

    data = booking.model_dump(exclude_unset=True, exclude={"dietary", "event_type"})
    for key, value in data.items():
        setattr(db_booking, key, value)
    if booking.dietary is not None and "notes" in booking.dietary.model_fields_set:
        db_booking.dietary_notes = booking.dietary.notes

    save_tags(db, db_booking, booking)
    db.flush()

    filled = fill_booking(db_booking)
    event = enqueue_event(db, projections.BOOKING_INDEX, projections.booking_document(filled))
    event_ids = [event.id]
    db.commit()
    return Mutation(filled, event_ids)


def remove_booking(db: Session, booking_id: str) -> Mutation:
    """
    Hard-deletes a booking. The mirror clean-up (both user aggregates and the
    booking document) is queued in the same commit.
    """
    db_booking = get_booking(db, booking_id)
    filled = fill_booking(db_booking)
    vendor_user_id = db_booking.vendor.user_id

    events = [
        enqueue_event(db, projections.USER_BOOKING_REMOVED,
                      {"user_id": db_booking.customer_id, "booking_id": booking_id}),
        enqueue_event(db, projections.USER_BOOKING_REMOVED,
                      {"user_id": vendor_user_id, "booking_id": booking_id}),
        enqueue_event(db, projections.BOOKING_UNINDEX, {"booking_id": booking_id}),
    ]
    event_ids = [event.id for event in events]
    db.delete(db_booking)
    db.commit()
    return Mutation(filled, event_ids)


# --- Payments ---

def create_payment(db: Session, booking_id: str, total: Decimal, currency: str,
                   provider: Dict[str, Any]) -> models.Payment:
    db_payment = models.Payment(
        booking_id=booking_id,
        total=total,
        currency=currency,
        provider=provider,
    )
    db.add(db_payment)
    db.commit()
    db.refresh(db_payment)
    return db_payment


def get_payment(db: Session, payment_id: str) -> models.Payment:
    db_payment = db.query(models.Payment).filter(models.Payment.id == payment_id).first()
    if db_payment is None:
        raise PaymentNotFound()
    return db_payment


def get_payments_by_booking(db: Session, booking_id: str) -> List[models.Payment]:
    return (
        db.query(models.Payment)
        .filter(models.Payment.booking_id == booking_id)
        .order_by(models.Payment.created)
        .all()
    )


def update_payment_state(db: Session, payment_id: str, state: models.PaymentState) -> models.Payment:
    db_payment = get_payment(db, payment_id)
    db_payment.state = state
    db.commit()
    db.refresh(db_payment)
    return db_payment
