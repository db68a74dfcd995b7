"""Authentication helpers: bearer tokens, request context and role checks."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext

from clinicavoice import time_utils
from clinicavoice.config import Settings, get_settings
from clinicavoice.errors import Forbidden

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

CLINICIAN = "clinician"
PATIENT = "patient"
ROLE_CLAIM = "custom:user_type"
ACCESS_TOKEN_EXPIRE_MINUTES = 60

security = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    """Hash a plaintext password using a secure algorithm."""

    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    """Verify a plaintext password against a stored hash."""

    try:
        return pwd_context.verify(password, hashed)
    except (ValueError, TypeError):
        return False


@dataclass(frozen=True)
class RequestContext:
    """Verified caller identity passed into every operation."""

    subject_id: str
    role: str
    email: Optional[str] = None

    @property
    def is_clinician(self) -> bool:
        return self.role == CLINICIAN

    @property
    def is_patient(self) -> bool:
        return self.role == PATIENT


def context_from_claims(claims: Mapping[str, Any]) -> RequestContext:
    """Build a :class:`RequestContext`; raises ``ValueError`` on missing claims."""

    subject = claims.get("sub")
    role = claims.get(ROLE_CLAIM) or claims.get("role")
    if not isinstance(subject, str) or not subject:
        raise ValueError("token is missing the subject claim")
    if not isinstance(role, str) or not role:
        raise ValueError("token is missing the user type claim")
    email = claims.get("email")
    return RequestContext(subject_id=subject, role=role, email=email if isinstance(email, str) else None)


def create_access_token(
    subject_id: str,
    role: str,
    *,
    email: str | None = None,
    settings: Settings | None = None,
    expires_minutes: int | None = None,
) -> str:
    """Create a signed JWT carrying the subject and user type claims."""

    settings = settings or get_settings()
    minutes = expires_minutes or ACCESS_TOKEN_EXPIRE_MINUTES
    payload: Dict[str, Any] = {
        "sub": subject_id,
        ROLE_CLAIM: role,
        "exp": time_utils.utc_now() + timedelta(minutes=minutes),
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> Dict[str, Any]:
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])


def get_request_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    settings: Settings = Depends(get_settings),
) -> RequestContext:
    """Decode the bearer token into a :class:`RequestContext`."""

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication token",
        )
    try:
        claims = decode_token(credentials.credentials, settings)
        return context_from_claims(claims)
    except (jwt.PyJWTError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )


def require_roles(*roles: str, message: str = "Unauthorized"):
    """Dependency factory ensuring the caller holds one of ``roles``."""

    allowed = set(roles)

    def checker(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
        if ctx.role not in allowed:
            raise Forbidden(message)
        return ctx

    return checker


require_clinician = require_roles(CLINICIAN)
require_member = require_roles(CLINICIAN, PATIENT)


__all__ = [
    "CLINICIAN",
    "PATIENT",
    "RequestContext",
    "context_from_claims",
    "create_access_token",
    "decode_token",
    "get_request_context",
    "require_roles",
    "require_clinician",
    "require_member",
    "hash_password",
    "verify_password",
]
