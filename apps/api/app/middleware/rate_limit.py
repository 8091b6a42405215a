from __future__ import annotations

import math
import threading
import time
import uuid
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.auth import decode_principal
from app.core.config import get_settings


WINDOW_SECONDS = 60
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

# /api/crm/<segment> -> bucket group; lead contacts, labels and conversion share the lead bucket
ENTITY_ROUTE_GROUPS = {
    "deals": "crm.deal",
    "contacts": "crm.contact",
    "leads": "crm.lead",
    "organizations": "crm.organization",
    "partners": "crm.partner",
    "activities": "crm.activity",
    "icps": "crm.icp",
    "shares": "crm.sharing",
}


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float

    def consume(self, now: float, capacity: int, rate: float) -> int:
        """Take one token. Returns 0 on success, else the seconds until one is available."""
        self.tokens = min(float(capacity), self.tokens + max(0.0, now - self.refilled_at) * rate)
        self.refilled_at = now
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return 0
        return max(1, math.ceil((1.0 - self.tokens) / rate))


class MutationBuckets:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def take(self, user_id: str, route_group: str, per_minute: int) -> int:
        if per_minute <= 0:
            return WINDOW_SECONDS
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.setdefault((user_id, route_group), _Bucket(float(per_minute), now))
            return bucket.consume(now, per_minute, per_minute / WINDOW_SECONDS)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_buckets = MutationBuckets()


def resolve_route_group(path: str) -> str:
    parts = [part for part in path.split("/") if part]
    if len(parts) < 3:
        return "crm"
    if parts[2] == "catalog":
        return f"catalog.{parts[3]}" if len(parts) > 3 else "catalog"
    return ENTITY_ROUTE_GROUPS.get(parts[2], "crm")


def _user_key(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    token = auth_header[7:].strip() if auth_header.lower().startswith("bearer ") else ""
    principal = decode_principal(token)
    return principal.user_id if principal is not None else "anonymous"


def _rate_limited(request: Request, retry_after: int) -> JSONResponse:
    correlation_id = (
        get_correlation_id()
        or getattr(request.state, "correlation_id", None)
        or request.headers.get("x-correlation-id")
        or str(uuid.uuid4())
    )
    return JSONResponse(
        status_code=429,
        content={
            "code": "RATE_LIMITED",
            "message": "Muitas requisições, tente novamente em instantes",
            "details": {"retry_after": retry_after},
            "correlation_id": correlation_id,
        },
        headers={"Retry-After": str(retry_after), "X-Correlation-Id": correlation_id},
    )


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    """Token bucket per (user, CRM entity group) over writes under /api/crm."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if (
            settings.rate_limit_disabled
            or request.method.upper() not in MUTATING_METHODS
            or not request.url.path.startswith("/api/crm")
        ):
            return await call_next(request)

        retry_after = _buckets.take(
            _user_key(request),
            resolve_route_group(request.url.path),
            settings.rate_limit_crm_mutations_per_minute,
        )
        if retry_after:
            return _rate_limited(request, retry_after)
        return await call_next(request)


def reset_rate_limiter() -> None:
    _buckets.clear()
