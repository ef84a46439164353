import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from . import crud, models, schemas
from .errors import BookingServiceError, OwnershipViolation
from .models import UserRole
from .notifications import NotificationDispatcher
from .outbox_poller import dispatch_events
from .projections import USERS
from .search_index import SearchIndex

logger = logging.getLogger("booking_service")


async def _project(db: Session, index: SearchIndex, user_id: str, event_ids: List[int]) -> None:
    try:
        await dispatch_events(db, index, event_ids=event_ids, limit=len(event_ids))
    except Exception as e:
        logger.error(f"User {user_id} search document deferred to the outbox poller: {e}")
        db.rollback()


def _check_self_or_admin(user_id: str, actor: schemas.Actor, action: str) -> None:
    if actor.role != UserRole.ADMIN and actor.id != user_id:
        raise OwnershipViolation(f"Not allowed to {action} this user")


async def register_user(db: Session, index: SearchIndex, dispatcher: NotificationDispatcher,
                        payments, user: schemas.UserCreate) -> models.User:
    """
    Creates the user with its search document, links a payment-provider
    customer and sends the welcome email.
    """
    db_user, event_ids = crud.create_user(db, user)
    logger.info(f"User {db_user.id} ({db_user.type.value}) created")

    await _project(db, index, db_user.id, event_ids)

    customer_id = await payments.create_customer(db_user.email)
    db_user = crud.set_payment_customer(db, db_user.id, customer_id)

    await dispatcher.dispatch([
        ("welcome", {"receiver": db_user.email, "username": db_user.full_name}),
    ])
    return db_user


def read_user(db: Session, user_id: str, actor: schemas.Actor) -> models.User:
    _check_self_or_admin(user_id, actor, "read")
    return crud.get_user(db, user_id)


async def update_user(db: Session, index: SearchIndex, user_id: str, data: schemas.UserUpdate,
                      actor: schemas.Actor) -> models.User:
    _check_self_or_admin(user_id, actor, "update")
    if "type" in data.model_fields_set and actor.role != UserRole.ADMIN:
        raise OwnershipViolation("Only admins can change a user's type")

    db_user, event_ids = crud.update_user(db, user_id, data)
    logger.info(f"User {user_id} updated by {actor.id}")
    # Only the changed fields are merged into the search document
    await _project(db, index, user_id, event_ids)
    return db_user


async def remove_user(db: Session, index: SearchIndex, user_id: str, actor: schemas.Actor) -> Dict[str, str]:
    _check_self_or_admin(user_id, actor, "remove")
    event_ids = crud.remove_user(db, user_id)
    logger.info(f"User {user_id} removed by {actor.id}")
    await _project(db, index, user_id, event_ids)
    return {"message": "User has been successfully removed."}


def list_users(db: Session, actor: schemas.Actor, limit: int = 10, offset: int = 0) -> List[models.User]:
    """Admins page through every user; anyone else gets their own profile."""
    if actor.role == UserRole.ADMIN:
        return crud.get_users(db, limit, offset)
    return [crud.get_user(db, actor.id)]


async def search_users(db: Session, index: SearchIndex, query: Optional[str], limit: int,
                       offset: int) -> Dict[str, Any]:
    docs, total = await index.query(USERS, query, limit, offset)

    results = []
    for doc in docs:
        if not doc.get("id"):
            continue
        try:
            results.append(crud.get_user(db, doc["id"]))
        except BookingServiceError as e:
            logger.error(f"Dropping user search hit {doc['id']}: {e}")

    paging = {
        "limit": limit,
        "offset": offset,
        "next": offset + limit if offset + limit < total else None,
        "previous": max(offset - limit, 0) if offset > 0 else None,
    }
    return {"totalRecords": total, "results": results, "paging": paging}
