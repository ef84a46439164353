"""
Search-index projections of the relational records.

Each mirror write is recorded as an outbox event in the same transaction as
the relational change, then applied here. Handlers are idempotent so an event
may be applied more than once.
"""

import logging
from typing import Any, Dict

from .search_index import SearchIndex

logger = logging.getLogger("booking_service")

BOOKINGS = "bookings"
USERS = "users"

# Outbox topics
BOOKING_INDEX = "bookings.index"
BOOKING_UNINDEX = "bookings.unindex"
USER_INDEX = "users.index"
USER_UNINDEX = "users.unindex"
USER_BOOKING_ADDED = "users.booking_added"
USER_BOOKING_REMOVED = "users.booking_removed"

# Document paths each collection can be filtered on with `path:value`
TAG_FIELDS = {
    BOOKINGS: ("id", "state", "customer.id", "customer.email", "vendor.id", "vendor.name"),
    USERS: ("id", "email", "type", "bookings"),
}


def isoformat(value) -> str | None:
    return value.isoformat() if value is not None else None


def booking_document(booking: Dict[str, Any]) -> Dict[str, Any]:
    """Summary of a filled booking as stored in the bookings collection."""
    timings = booking.get("timings") or {}
    return {
        "id": booking["id"],
        "timings": {"date": timings.get("date")},
        "created": isoformat(booking.get("created")),
        "state": booking["state"].value if hasattr(booking["state"], "value") else booking["state"],
        "vendor": {"name": booking["vendor"]["name"], "id": booking["vendor"]["id"]},
        "customer": {"email": booking["customer"]["email"], "id": booking["customer"]["id"]},
        "menuPrice": float(booking["menuPrice"]),
        "total": float(booking["total"]),
    }


# Column name -> document field, for partial user documents
USER_FIELDS = {
    "email": "email",
    "type": "type",
    "first_name": "firstName",
    "last_name": "lastName",
    "phone": "phone",
}


def user_document(user, changed=None) -> Dict[str, Any]:
    """The user's search document, or only its id and the changed columns when given."""
    doc = {
        "id": user.id,
        "email": user.email,
        "type": user.type.value,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "phone": user.phone or "",
        "created": isoformat(user.created),
    }
    if changed is None:
        return doc
    keep = {"id"} | {USER_FIELDS[column] for column in changed if column in USER_FIELDS}
    return {key: value for key, value in doc.items() if key in keep}


async def apply_event(index: SearchIndex, topic: str, payload: Dict[str, Any]) -> None:
    if topic == BOOKING_INDEX:
        await index.upsert_doc(BOOKINGS, payload)

    elif topic == BOOKING_UNINDEX:
        found = await index.get_doc(BOOKINGS, payload["booking_id"])
        if found is not None:
            await index.remove_doc(BOOKINGS, found[0])

    elif topic == USER_INDEX:
        # Partial documents are merged into the stored one
        await index.upsert_doc(USERS, payload)

    elif topic == USER_UNINDEX:
        found = await index.get_doc(USERS, payload["user_id"])
        if found is not None:
            await index.remove_doc(USERS, found[0])

    elif topic == USER_BOOKING_ADDED:
        await index.add_to_list(
            USERS, payload["user_id"], "bookings", payload["booking_id"],
            extra={"lastBookingDate": payload.get("date")},
        )

    elif topic == USER_BOOKING_REMOVED:
        await index.remove_from_list(USERS, payload["user_id"], "bookings", payload["booking_id"])

    else:
        raise ValueError(f"Unknown outbox topic: {topic}")

    logger.debug(f"Applied {topic}: {payload}")
