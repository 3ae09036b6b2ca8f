"""
Gryork Case Engine - Authentication Boundary
JWT bearer tokens decoded into an explicit Actor (id + role)

Token issuance belongs to the identity service; create_access_token is
kept for scripts and tests.
"""
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from .models.actor import Actor
from .models.db_models import ActorRole

# Configuration
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "gryork-secret-key-change-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = 24

# Bearer token security
security = HTTPBearer()


def create_access_token(user_id: str, role: str, name: Optional[str] = None) -> str:
    """Create a JWT access token with role claim."""
    expire = datetime.now(timezone.utc) + timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)
    to_encode = {
        "sub": user_id,
        "role": role,
        "name": name,
        "exp": expire,
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token (signature and expiry)."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    """
    Dependency to get the authenticated actor.
    The role claim must be one of the closed ActorRole values; SYSTEM is never accepted.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise credentials_exception

    user_id = payload.get("sub")
    if user_id is None:
        raise credentials_exception

    try:
        role = ActorRole(payload.get("role"))
    except ValueError:
        raise credentials_exception
    if role == ActorRole.SYSTEM:
        raise credentials_exception

    return Actor(id=user_id, role=role, name=payload.get("name"))


def require_roles(*roles: ActorRole):
    """
    Dependency factory for read endpoints restricted to some roles.
    Commands are gated inside the lifecycle core instead.
    """
    allowed = frozenset(roles)

    async def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires one of: {', '.join(sorted(r.value for r in allowed))}",
            )
        return actor

    return dependency
