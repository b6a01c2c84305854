"""Caller identity and actor-type access control."""

from enum import Enum
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from app.core.security import decode_access_token


class ActorType(str, Enum):
    """Who is calling. Also recorded as ``changed_by_type`` in order history."""

    CUSTOMER = "customer"
    STAFF = "staff"
    DRIVER = "driver"
    SYSTEM = "system"


class TokenData:
    """Decoded token data.

    Attributes:
        principal_id: Database ID of the customer, staff user or driver.
        actor: The actor type claim.
        restaurant_id: Restaurant the staff user or driver works for, if any.
    """

    def __init__(self, principal_id: int, actor: ActorType, restaurant_id: int | None = None):
        self.principal_id = principal_id
        self.id = principal_id
        self.actor = actor
        self.restaurant_id = restaurant_id


async def get_current_principal(request: Request) -> TokenData:
    """Get the caller from the ``Authorization: Bearer <token>`` header."""
    payload = None

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1]
        if token:
            payload = decode_access_token(token)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        principal_id = int(payload["sub"])
        actor = ActorType(payload.get("actor", ActorType.CUSTOMER.value))
    except (KeyError, TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    restaurant_id = payload.get("restaurant_id")
    return TokenData(
        principal_id=principal_id,
        actor=actor,
        restaurant_id=int(restaurant_id) if restaurant_id else None,
    )


def require_actor(*allowed: ActorType):
    """Dependency that only lets the given actor types through."""

    async def actor_checker(
        principal: Annotated[TokenData, Depends(get_current_principal)]
    ) -> TokenData:
        if principal.actor not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires actor {' or '.join(a.value for a in allowed)}",
            )
        return principal

    return actor_checker


CurrentCustomer = Annotated[TokenData, Depends(require_actor(ActorType.CUSTOMER))]
RequireStaff = Annotated[TokenData, Depends(require_actor(ActorType.STAFF))]
CurrentPrincipal = Annotated[TokenData, Depends(get_current_principal)]
