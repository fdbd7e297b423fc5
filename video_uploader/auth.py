"""Bearer-token identity: HS256 JWTs minted by the OAuth callback service."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Request

from video_uploader.config import ADMIN_EMAILS, JWT_ALGORITHM, JWT_SECRET, UPLOAD_AUTH_REQUIRED
from video_uploader.core.exceptions import AuthError, ForbiddenError


def create_access_token(
    subject: str,
    *,
    email: Optional[str] = None,
    role: str = "user",
    expires_minutes: int = 60,
    secret: str = JWT_SECRET,
) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {"sub": subject, "role": role, "exp": expire}
    if email:
        payload["email"] = email
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_identity(request: Request) -> Optional[dict]:
    """Claims of the presented bearer token, or None when no token was sent."""
    token = _bearer_token(request)
    if token is None:
        return None
    if not JWT_SECRET:
        raise AuthError("Token authentication is not configured on this server")
    try:
        return decode_token(token)
    except jwt.PyJWTError:
        raise AuthError("Invalid or expired token") from None


def uploader_identity(request: Request) -> Optional[dict]:
    identity = get_identity(request)
    if identity is None and UPLOAD_AUTH_REQUIRED:
        raise AuthError("Authentication required")
    return identity


def require_admin(request: Request) -> dict:
    if not JWT_SECRET:
        raise ForbiddenError("Admin API is disabled on this server")
    identity = get_identity(request)
    if identity is None:
        raise AuthError("Authentication required")
    email = str(identity.get("email", "")).lower()
    if identity.get("role") != "admin" and email not in ADMIN_EMAILS:
        raise ForbiddenError("Admin access required")
    return identity
