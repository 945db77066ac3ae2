"""
Identity dependencies for FastAPI.

The identity service issues bearer tokens; the API layer decodes them into an
IdentityContext and passes the scope values into the domain explicitly.
"""

from dataclasses import dataclass
from typing import List, Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from courier_backend.app.core.jwt import decode_access_token
from courier_backend.app.models.enums import UserRole

# HTTP Bearer security scheme
security = HTTPBearer()


@dataclass(frozen=True)
class IdentityContext:
    """Who is calling and which hub / rider / merchant they are scoped to."""
    user_id: int
    role: UserRole
    username: Optional[str] = None
    hub_id: Optional[int] = None
    rider_id: Optional[int] = None
    merchant_id: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def identity_from_payload(payload: dict) -> IdentityContext:
    try:
        role = UserRole(payload.get("role"))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid role in token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return IdentityContext(
        user_id=payload["user_id"],
        role=role,
        username=payload.get("sub"),
        hub_id=payload.get("hub_id"),
        rider_id=payload.get("rider_id"),
        merchant_id=payload.get("merchant_id"),
    )


async def get_identity(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> IdentityContext:
    """
    Decode the bearer token into an IdentityContext.

    Raises:
        HTTPException: 401 if the token is invalid or carries no user
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None or not payload.get("user_id"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity_from_payload(payload)


def require_scope(*roles: UserRole, scope: Optional[str] = None):
    """
    Dependency factory that checks the caller's role and that the token
    carries the scope id the endpoint needs (``hub_id``, ``rider_id``...).

    Usage:
        @router.post("/hub/parcels/{parcel_id}/receive")
        async def receive(identity: IdentityContext = Depends(require_scope(UserRole.HUB_MANAGER, scope="hub_id"))):
            ...
    """
    allowed: List[UserRole] = list(roles)

    async def checker(identity: IdentityContext = Depends(get_identity)) -> IdentityContext:
        if allowed and identity.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {', '.join(r.value for r in allowed)}"
            )
        if scope and getattr(identity, scope) is None:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Token is not scoped to a {scope.replace('_id', '')}"
            )
        return identity

    return checker
