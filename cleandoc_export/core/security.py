"""JWT authentication and RBAC authorization helpers."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from cleandoc_export.core.config import settings

# JWT bearer scheme
security_scheme = HTTPBearer(auto_error=False)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token.

    The payload should carry ``sub`` (user id), ``role`` and ``tenant_id``.
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.JWT_EXPIRY_MINUTES)
    )
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        return payload
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def _require_payload(credentials: Optional[HTTPAuthorizationCredentials]) -> dict:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = decode_token(credentials.credentials)
    if payload.get("sub") is None or payload.get("tenant_id") is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )
    return payload


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
) -> dict:
    """Return the decoded token payload (``sub``, ``role``, ``tenant_id``)."""
    return _require_payload(credentials)


class RequireRole:
    """Dependency that checks if the user has a required role level."""

    ROLE_LEVELS = {
        "viewer": 20,
        "member": 40,
        "team_lead": 60,
        "admin": 80,
        "super_admin": 100,
    }

    def __init__(self, min_role: str):
        self.min_level = self.ROLE_LEVELS.get(min_role, 0)

    async def __call__(
        self,
        request: Request,
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
    ) -> dict:
        payload = _require_payload(credentials)
        # Picked up by the request log
        request.state.tenant_id = payload["tenant_id"]
        request.state.actor_id = str(payload["sub"])
        user_role = payload.get("role", "viewer")
        user_level = self.ROLE_LEVELS.get(user_role, 0)
        if user_level < self.min_level:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{user_role}' insufficient. Requires level {self.min_level}+.",
            )
        return payload


# Convenience dependency factories
require_viewer = RequireRole("viewer")
require_team_lead = RequireRole("team_lead")
require_admin = RequireRole("admin")
