"""JWT token handling and access-control dependencies.

User accounts live in the platform's identity service; tokens it issues carry
``sub`` (user id), ``role`` and, for students, ``student_id``.  This service
trusts a valid signature and turns the claims into an ``Actor``.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from bursar.config import settings
from bursar.services.actor import Actor, Role

security = HTTPBearer()

ALGORITHM = "HS256"


def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None,
    jti: Optional[str] = None,
) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({
        "exp": expire,
        "type": "access",
        "jti": jti or uuid.uuid4().hex,
    })
    return jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)


def token_for(actor: Actor, expires_delta: Optional[timedelta] = None) -> str:
    claims = {"sub": str(actor.user_id), "role": actor.role.value}
    if actor.student_id is not None:
        claims["student_id"] = actor.student_id
    return create_access_token(claims, expires_delta)


def decode_token(token: str) -> dict:
    """Decode and return the JWT payload. Raises JWTError on failure."""
    return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = decode_token(credentials.credentials)
        if payload.get("type") != "access" or payload.get("sub") is None:
            raise credentials_exception
        role = Role(payload.get("role"))
        user_id = int(payload["sub"])
        student_id = payload.get("student_id")
        student_id = int(student_id) if student_id is not None else None
    except (JWTError, ValueError, TypeError):
        raise credentials_exception

    if role == Role.SYSTEM:
        # System actions come from workers, never from bearer tokens
        raise credentials_exception
    if role == Role.STUDENT and student_id is None:
        raise credentials_exception
    return Actor(user_id=user_id, role=role, student_id=student_id)


def require_roles(*roles: Role):
    """Dependency factory that checks the actor has one of the given roles."""
    async def role_checker(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in roles and actor.role != Role.ADMIN:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return actor
    return role_checker


def ensure_owner_or_staff(actor: Actor, student_id: int) -> None:
    """Students may only touch their own records."""
    if actor.role == Role.STUDENT and actor.student_id != student_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions",
        )
