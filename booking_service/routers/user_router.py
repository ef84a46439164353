from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi_limiter.depends import RateLimiter
from sqlalchemy.orm import Session

from .. import accounts, crud, schemas
from ..auth import get_current_actor, get_current_admin, get_key_by_user_id_or_ip
from ..database import get_db
from ..dependencies import get_dispatcher, get_payment_gateway, get_search_index

router = APIRouter(prefix="/users", tags=["Users"])

rate_limit = RateLimiter(times=10, minutes=1, identifier=get_key_by_user_id_or_ip)

Actor = Annotated[schemas.Actor, Depends(get_current_actor)]
Admin = Annotated[schemas.Actor, Depends(get_current_admin)]


@router.post("/", response_model=schemas.UserRead, status_code=status.HTTP_201_CREATED)
async def create_user(
        user: schemas.UserCreate,
        db: Session = Depends(get_db),
        index=Depends(get_search_index),
        dispatcher=Depends(get_dispatcher),
        payments=Depends(get_payment_gateway),
        _: None = Depends(rate_limit)
):
    """
    Register a user, link a payment-provider customer and send the welcome email.
    """
    return await accounts.register_user(db, index, dispatcher, payments, user)


@router.get("/", response_model=List[schemas.UserRead])
async def list_users(
        actor: Actor,
        limit: int = Query(default=10, ge=1, le=100),
        offset: int = Query(default=0, ge=0),
        db: Session = Depends(get_db),
        _: None = Depends(rate_limit)
):
    """Every user for admins, paged; the caller's own profile for anyone else."""
    return accounts.list_users(db, actor, limit, offset)


@router.get("/search", response_model=schemas.UserSearchResult)
async def search_users(
        admin: Admin,
        q: Optional[str] = None,
        limit: int = Query(default=10, ge=1, le=100),
        offset: int = Query(default=0, ge=0),
        db: Session = Depends(get_db),
        index=Depends(get_search_index),
        _: None = Depends(rate_limit)
):
    return await accounts.search_users(db, index, q, limit, offset)


@router.get("/{user_id}", response_model=schemas.UserRead)
async def read_user(
        user_id: str,
        actor: Actor,
        db: Session = Depends(get_db),
        _: None = Depends(rate_limit)
):
    return accounts.read_user(db, user_id, actor)


@router.patch("/{user_id}", response_model=schemas.UserRead)
async def update_user(
        user_id: str,
        user: schemas.UserUpdate,
        actor: Actor,
        db: Session = Depends(get_db),
        index=Depends(get_search_index),
        _: None = Depends(rate_limit)
):
    return await accounts.update_user(db, index, user_id, user, actor)


@router.delete("/{user_id}", response_model=schemas.Message)
async def delete_user(
        user_id: str,
        actor: Actor,
        db: Session = Depends(get_db),
        index=Depends(get_search_index),
        _: None = Depends(rate_limit)
):
    return await accounts.remove_user(db, index, user_id, actor)


@router.post("/{user_id}/vendor", response_model=schemas.VendorRead, status_code=status.HTTP_201_CREATED)
async def create_vendor_profile(
        user_id: str,
        vendor: schemas.VendorCreate,
        admin: Admin,
        db: Session = Depends(get_db),
        _: None = Depends(rate_limit)
):
    """Attach a vendor profile (name and menu price) to a vendor user. Admin only."""
    return crud.create_vendor(db, vendor.model_copy(update={"user_id": user_id}))
