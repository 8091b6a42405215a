from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.config import get_settings
from app.platform.security.context import Principal, Role


logger = logging.getLogger("app.auth")


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    if not auth_header.lower().startswith("bearer "):
        return ""
    return auth_header[7:].strip()


def decode_principal(token: str, correlation_id: str | None = None) -> Principal | None:
    """Resolve a bearer token into a principal, or ``None`` when it cannot be trusted."""

    if not token:
        return None

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        logger.warning("auth.invalid_token", extra={"error": str(exc)})
        return None

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        return None

    role = Role.parse(payload.get("role"))
    if role is None:
        logger.warning("auth.unknown_role", extra={"user_id": subject})
        return None

    return Principal(user_id=subject.strip(), role=role, correlation_id=correlation_id)


async def get_current_principal(request: Request) -> Principal | None:
    correlation_id = getattr(request.state, "correlation_id", None) or get_correlation_id()
    return decode_principal(_bearer_token(request), correlation_id)


def create_access_token(user_id: str, role: Role | str, expires_in: timedelta | None = None) -> str:
    settings = get_settings()
    claims: dict[str, object] = {"sub": user_id, "role": str(role)}
    if expires_in is not None:
        claims["exp"] = datetime.now(timezone.utc) + expires_in
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
