import uuid
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


@dataclass(frozen=True)
class RequestContext:
    request_id: str
    correlation_id: str


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Exposes the request identifiers on request.state and echoes x-request-id."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or str(uuid.uuid4())
        request.state.context = RequestContext(request_id=correlation_id, correlation_id=correlation_id)
        response = await call_next(request)
        response.headers["x-request-id"] = correlation_id
        return response
