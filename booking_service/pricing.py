"""
Values derived from a booking on every read. None of these are stored.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List

from .models import DIETARY_TAG_CATEGORY, EVENT_TAG_CATEGORY

CENT = Decimal("0.01")


def _as_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def event_type(tags: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """The single event-type tag, or an empty dict."""
    for tag in tags:
        if tag.get("pid") == EVENT_TAG_CATEGORY:
            return tag
    return {}


def dietary_tags(tags: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [tag for tag in tags if tag.get("pid") == DIETARY_TAG_CATEGORY]


def booking_total(covers: int, menu_price: Any, tags: Iterable[Dict[str, Any]]) -> Decimal:
    """covers * menuPrice plus priceModifier * quantity of every dietary tag."""
    total = _as_decimal(covers) * _as_decimal(menu_price)
    for tag in dietary_tags(tags):
        total += _as_decimal(tag.get("priceModifier")) * _as_decimal(tag.get("quantity"))
    return total


def charge_amount(total: Any, service_fee: Any) -> Decimal:
    """Amount the customer is charged: total plus the service fee percentage."""
    amount = _as_decimal(total) * (1 + _as_decimal(service_fee) / 100)
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Any) -> int:
    # Stripe expects amounts in cents/pence
    return int((_as_decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
