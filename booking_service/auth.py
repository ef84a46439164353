from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader
from jose import jwt, JWTError
from pydantic import ValidationError as PydanticValidationError

from .config import settings
from .models import UserRole
from .schemas import Actor

api_key_header = APIKeyHeader(name="Authorization")


def create_access_token(user_id: str, role: UserRole) -> str:
    """Token in the format this service verifies. Issuing tokens is the auth service's job."""
    return jwt.encode({"sub": str(user_id), "role": UserRole(role).value},
                      settings.SECRET_KEY, algorithm=settings.ALGORITHM)


async def get_key_by_user_id_or_ip(request: Request) -> str:
    """
    Tries to get the user ID from the JWT token.
    If it fails (no token, invalid token), it falls back to the client's IP.
    """
    try:
        token = request.headers.get("Authorization")
        scheme, jwt_token = token.split()
        if scheme.lower() != "bearer":
            return request.client.host  # Fallback to IP

        payload = jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = payload.get("sub")

        if user_id:
            return str(user_id)
    except (JWTError, ValueError, AttributeError, TypeError):
        # If token is invalid, missing, or malformed, limit by IP
        pass
    return request.client.host


async def get_current_actor(
        token: Annotated[str, Depends(api_key_header)]
) -> Actor:
    """
    Decodes the JWT from the 'Authorization: Bearer ...' header into the acting user.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        scheme, jwt_token = token.split()
        if scheme.lower() != "bearer":
            raise credentials_exception
        payload = jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = payload.get("sub")
        if user_id is None:
            raise credentials_exception
        return Actor(id=str(user_id), role=payload.get("role", UserRole.CUSTOMER.value))
    except (JWTError, ValueError, AttributeError, PydanticValidationError):
        raise credentials_exception


async def get_current_admin(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
    if actor.role != UserRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operation not permitted")
    return actor
