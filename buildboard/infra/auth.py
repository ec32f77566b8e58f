from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))
JWT_ISSUER = os.getenv("JWT_ISSUER", "buildboard")


def create_access_token(
    *,
    user_id: str,
    organization_id: str,
    email: str,
    permissions: list[str] | None = None,
    access_contexts: list[str] | None = None,
    is_super_admin: bool = False,
    expires_minutes: int | None = None,
) -> str:
    now = datetime.now(UTC)
    expire_delta = timedelta(minutes=expires_minutes or JWT_EXPIRES_MIN)
    payload: dict[str, Any] = {
        "iss": JWT_ISSUER,
        "sub": user_id,
        "organization_id": organization_id,
        "email": email,
        "is_super_admin": is_super_admin,
        "permissions": permissions or [],
        "access_contexts": access_contexts or [],
        "iat": int(now.timestamp()),
        "exp": int((now + expire_delta).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    decoded = jwt.decode(
        token,
        JWT_SECRET,
        algorithms=[JWT_ALGORITHM],
        issuer=JWT_ISSUER,
        options={"require": ["sub", "exp"]},
    )
    if not isinstance(decoded, dict):
        raise ValueError("Invalid token payload")
    if not decoded.get("organization_id"):
        raise ValueError("token carries no organization")
    return decoded
