from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.events import DomainEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import CrmMutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import correlation_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

_logged_event_types = [
    "crm.lead.converted",
    "crm.deal.stage_changed",
]


def _on_system_started(event: DomainEvent) -> None:
    logger.info("system_event", extra={"action": event.name})


def _on_crm_milestone(event: DomainEvent) -> None:
    inner = event.payload.get("payload") or {}
    logger.info(
        "crm.milestone",
        extra={
            "action": event.name,
            "user_id": event.payload.get("actor_user_id"),
            "entity_id": inner.get("lead_id") or inner.get("deal_id"),
        },
    )


def register_subscriptions() -> None:
    global _subscriptions_registered
    if _subscriptions_registered:
        return
    event_bus.subscribe("system.started", _on_system_started)
    for event_name in _logged_event_types:
        event_bus.subscribe(event_name, _on_crm_milestone)
    _subscriptions_registered = True


@asynccontextmanager
async def lifespan(app: FastAPI):
    register_subscriptions()
    event_bus.publish("system.started", {"service": get_settings().app_name})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

setup_otel(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=correlation_request_hook)
