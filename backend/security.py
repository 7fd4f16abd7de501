"""Bearer token verification for students, teachers and admins."""
import logging
from datetime import timedelta
from typing import Optional

from fastapi import Depends, Header
from jose import JWTError, jwt
from pydantic import BaseModel

from constants import JWT_SECRET_KEY, JWT_ALGORITHM
from datetime_utils import now_utc
from error_utils import UnauthorizedError, ForbiddenError
from models import ActorRole

logger = logging.getLogger(__name__)

ACCESS_TOKEN_EXPIRE_MINUTES = 60


class Actor(BaseModel):
    id: str
    role: ActorRole


def create_access_token(subject: str, role: ActorRole, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token. Sessions are issued elsewhere; this serves tooling and tests."""
    expire = now_utc() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": subject, "role": role.value, "exp": expire}
    return jwt.encode(to_encode, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


async def verify_token(authorization: Optional[str] = Header(None)) -> Actor:
    """Verify the bearer token and extract the acting identity"""
    if not authorization or not authorization.startswith("Bearer "):
        raise UnauthorizedError("Missing or invalid authorization header")

    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise UnauthorizedError("Invalid token")

    subject = payload.get("sub")
    role = payload.get("role")
    if not subject or role not in {r.value for r in ActorRole}:
        raise UnauthorizedError("Invalid token claims")
    return Actor(id=subject, role=ActorRole(role))


async def require_student(actor: Actor = Depends(verify_token)) -> Actor:
    if actor.role != ActorRole.STUDENT:
        raise ForbiddenError("Student access required")
    return actor


async def require_staff(actor: Actor = Depends(verify_token)) -> Actor:
    """Teachers and admins"""
    if actor.role not in (ActorRole.TEACHER, ActorRole.ADMIN):
        logger.info("Rejected %s %s on staff endpoint", actor.role.value, actor.id)
        raise ForbiddenError("Teacher or admin access required")
    return actor
