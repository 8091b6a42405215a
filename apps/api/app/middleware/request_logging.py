from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _finish(request: Request, status_code: int, started: float) -> dict[str, object]:
    # the route template is only known once routing has run
    path = resolve_http_path_label(request)
    elapsed = time.perf_counter() - started
    observe_http_request(method=request.method, path=path, status=status_code, duration=elapsed)
    return {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(elapsed * 1000, 2),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line and one histogram sample per request, keyed by route template."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error("http.error", exc_info=True, extra=_finish(request, 500, started))
            raise

        fields = _finish(request, response.status_code, started)
        logger.log(logging.WARNING if response.status_code >= 500 else logging.INFO, "http.request", extra=fields)
        return response
