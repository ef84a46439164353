from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi_limiter.depends import RateLimiter

from .. import schemas
from ..auth import get_current_actor, get_key_by_user_id_or_ip
from ..booking_lifecycle import BookingLifecycle
from ..dependencies import get_lifecycle

router = APIRouter(prefix="/bookings", tags=["Bookings"])

rate_limit = RateLimiter(times=30, minutes=1, identifier=get_key_by_user_id_or_ip)
payment_rate_limit = RateLimiter(times=5, minutes=1, identifier=get_key_by_user_id_or_ip)

Actor = Annotated[schemas.Actor, Depends(get_current_actor)]
Lifecycle = Annotated[BookingLifecycle, Depends(get_lifecycle)]


@router.get("/", response_model=schemas.SearchResult)
async def search_bookings(
        actor: Actor,
        lifecycle: Lifecycle,
        q: Optional[str] = None,
        limit: int = Query(default=10, ge=1, le=100),
        offset: int = Query(default=0, ge=0),
        _: None = Depends(rate_limit)
):
    """
    Search bookings. Customers only ever see their own bookings and vendors
    the ones assigned to them.
    """
    return await lifecycle.search(q, limit, offset, actor)


@router.post("/", response_model=schemas.BookingRead, status_code=status.HTTP_201_CREATED)
async def create_booking(
        booking: schemas.BookingCreate,
        actor: Actor,
        lifecycle: Lifecycle,
        _: None = Depends(rate_limit)
):
    """
    Create a new booking for the authenticated user.
    """
    return await lifecycle.create(actor, booking)


@router.post("/payment/create_token", response_model=schemas.TransactionToken)
async def create_payment_token(
        card: schemas.CardDetails,
        actor: Actor,
        lifecycle: Lifecycle,
        _: None = Depends(payment_rate_limit)
):
    token_id = await lifecycle.create_token(card)
    return {"id": token_id}


@router.get("/{booking_id}", response_model=schemas.BookingRead)
async def read_booking(
        booking_id: str,
        actor: Actor,
        lifecycle: Lifecycle,
        _: None = Depends(rate_limit)
):
    return await lifecycle.get_one(booking_id, actor)


@router.patch("/{booking_id}", response_model=schemas.BookingRead)
async def update_booking(
        booking_id: str,
        booking: schemas.BookingUpdate,
        actor: Actor,
        lifecycle: Lifecycle,
        _: None = Depends(rate_limit)
):
    """
    Update a booking. A state change must follow the booking state machine.
    """
    lifecycle.authorize(booking_id, actor, allow_vendor=False)
    return await lifecycle.update(booking_id, booking, actor.id)


@router.delete("/{booking_id}")
async def delete_booking(
        booking_id: str,
        actor: Actor,
        lifecycle: Lifecycle,
        _: None = Depends(rate_limit)
):
    lifecycle.authorize(booking_id, actor, allow_vendor=False)
    return await lifecycle.remove(booking_id, actor.id)


@router.post("/{booking_id}/status/send-email", response_model=schemas.Message)
async def send_booking_status_email(
        booking_id: str,
        actor: Actor,
        lifecycle: Lifecycle,
        _: None = Depends(rate_limit)
):
    lifecycle.authorize(booking_id, actor)
    return await lifecycle.send_status_notification(booking_id)


# --- Payments ---

@router.get("/{booking_id}/payments/", response_model=List[schemas.PaymentRead])
async def read_payments(
        booking_id: str,
        actor: Actor,
        lifecycle: Lifecycle,
        _: None = Depends(rate_limit)
):
    return await lifecycle.get_payments(booking_id, actor)


@router.post("/{booking_id}/payments/", response_model=schemas.PaymentRead, status_code=status.HTTP_201_CREATED)
async def create_payment(
        booking_id: str,
        payment: schemas.PaymentCreate,
        actor: Actor,
        lifecycle: Lifecycle,
        _: None = Depends(payment_rate_limit)
):
    """
    Authorize the booking total plus service fee on the card token.
    The charge is captured when the vendor accepts the payment.
    """
    lifecycle.authorize(booking_id, actor, allow_vendor=False)
    return await lifecycle.insert_payment(booking_id, payment, actor)


@router.get("/{booking_id}/payments/{payment_id}", response_model=schemas.PaymentRead)
async def read_payment(
        booking_id: str,
        payment_id: str,
        actor: Actor,
        lifecycle: Lifecycle,
        _: None = Depends(rate_limit)
):
    lifecycle.authorize(booking_id, actor)
    return await lifecycle.get_one_payment(booking_id, payment_id)


@router.post("/{booking_id}/payments/{payment_id}/accept", response_model=schemas.BookingRead)
async def accept_payment(
        booking_id: str,
        payment_id: str,
        actor: Actor,
        lifecycle: Lifecycle,
        _: None = Depends(payment_rate_limit)
):
    lifecycle.authorize(booking_id, actor)
    return await lifecycle.accept_payment(booking_id, payment_id)


@router.post("/{booking_id}/payments/{payment_id}/decline", response_model=schemas.BookingRead)
async def decline_payment(
        booking_id: str,
        payment_id: str,
        actor: Actor,
        lifecycle: Lifecycle,
        _: None = Depends(payment_rate_limit)
):
    lifecycle.authorize(booking_id, actor)
    return await lifecycle.decline_payment(booking_id, payment_id)


@router.post("/{booking_id}/payments/{payment_id}/status/send-email", response_model=schemas.Message)
async def send_payment_status_email(
        booking_id: str,
        payment_id: str,
        actor: Actor,
        lifecycle: Lifecycle,
        _: None = Depends(rate_limit)
):
    lifecycle.authorize(booking_id, actor)
    await lifecycle.get_one_payment(booking_id, payment_id)
    return await lifecycle.send_payment_status_notification(booking_id, payment_id)
