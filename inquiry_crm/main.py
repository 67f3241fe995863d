from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from inquiry_crm import audit
from inquiry_crm.api.routes import router as api_router
from inquiry_crm.core.config import get_settings
from inquiry_crm.core.events import DOMAIN_EVENT_TYPES, InternalEvent, event_bus
from inquiry_crm.logging import configure_logging
from inquiry_crm.middleware.correlation_id import CorrelationIdMiddleware
from inquiry_crm.middleware.rate_limit import MutationRateLimitMiddleware
from inquiry_crm.middleware.request_logging import RequestLoggingMiddleware
from inquiry_crm.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("inquiry_crm.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_type": event.name})


def _on_domain_event(event: InternalEvent) -> None:
    logger.info(
        "domain_event",
        extra={"event_type": event.name, "entity_id": event.entity_id},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    audit.resize(get_settings().audit_max_entries)
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe_many(DOMAIN_EVENT_TYPES, _on_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "inquiry-crm"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("inquiry-crm", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
