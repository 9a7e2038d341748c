"""
Invoicely Authentication

JWT-based caller identity for the approval API. The engine trusts the
``user_id`` this module returns and never reads identity from request
bodies.
"""

import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

import jwt

from invoicely.core.config import get_settings
from invoicely.services.errors import AuthenticationError, AuthorizationError

# Configuration
SECRET_KEY = os.getenv("INVOICELY_SECRET_KEY", secrets.token_urlsafe(32))
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60

# Bearer token security
security = HTTPBearer(auto_error=False)


class TokenData(BaseModel):
    """JWT token payload."""
    user_id: str
    email: str = ""
    organization_id: str = "default"
    role: str = "user"
    exp: datetime


def create_access_token(
    user_id: str,
    email: str = "",
    organization_id: str = "default",
    role: str = "user",
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a JWT access token."""
    if expires_delta is None:
        expires_delta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    expire = datetime.now(timezone.utc) + expires_delta

    payload = {
        "sub": user_id,
        "email": email,
        "org": organization_id,
        "role": role,
        "exp": expire,
        "iat": datetime.now(timezone.utc),
        "type": "access",
    }

    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")


def _is_known_api_key(api_key: str) -> bool:
    """Constant-time match against the configured service keys."""
    matched = False
    for known in get_settings().api_keys:
        if secrets.compare_digest(api_key.encode(), known.encode()):
            matched = True
    return matched


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> TokenData:
    """
    Get current authenticated user from JWT token or API key.

    Supports:
    - Bearer token: Authorization: Bearer <jwt>
    - API key: X-API-Key: org_<org_id>_<secret>, listed in INVOICELY_API_KEYS
    """
    if credentials and credentials.credentials:
        payload = decode_token(credentials.credentials)

        if payload.get("type") != "access" or not payload.get("sub"):
            raise AuthenticationError("Invalid token type")

        return TokenData(
            user_id=str(payload["sub"]),
            email=payload.get("email") or "",
            organization_id=payload.get("org") or "default",
            role=payload.get("role", "user"),
            exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    if x_api_key:
        if _is_known_api_key(x_api_key):
            # Service keys act as the organization's API user.
            parts = x_api_key.split("_")
            if len(parts) >= 3 and parts[0] == "org" and parts[1]:
                return TokenData(
                    user_id=f"api_{parts[1]}",
                    email="api@system",
                    organization_id=parts[1],
                    role="api",
                    exp=datetime.now(timezone.utc) + timedelta(hours=1),
                )

        raise AuthenticationError("Invalid API key")

    raise AuthenticationError("Not authenticated. Provide Bearer token or X-API-Key header.")


def require_role(allowed_roles: list[str]):
    """Dependency that admits only callers holding one of ``allowed_roles``."""
    def dependency(user: TokenData = Depends(get_current_user)) -> TokenData:
        if user.role not in allowed_roles:
            raise AuthorizationError(
                user.user_id,
                message=f"Role '{user.role}' not authorized. Required: {allowed_roles}",
            )
        return user
    return dependency
