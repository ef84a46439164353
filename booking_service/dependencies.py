from fastapi import Depends, Request
from sqlalchemy.orm import Session

from .booking_lifecycle import BookingLifecycle
from .config import settings
from .database import get_db


def get_search_index(request: Request):
    return request.app.state.search_index


def get_dispatcher(request: Request):
    return request.app.state.dispatcher


def get_payment_gateway(request: Request):
    return request.app.state.payment_gateway


def get_lifecycle(
        db: Session = Depends(get_db),
        index=Depends(get_search_index),
        dispatcher=Depends(get_dispatcher),
        payments=Depends(get_payment_gateway),
) -> BookingLifecycle:
    return BookingLifecycle(db, index, dispatcher, payments, currency=settings.PAYMENT_CURRENCY)
