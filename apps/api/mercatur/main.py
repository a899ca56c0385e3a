from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from mercatur.api.routes import router as api_router
from mercatur.core.config import get_settings
from mercatur.core.events import InternalEvent, event_bus
from mercatur.logging import configure_logging
from mercatur.middleware.correlation_id import CorrelationIdMiddleware
from mercatur.middleware.request_logging import RequestLoggingMiddleware
from mercatur.otel import get_fastapi_server_request_hook, setup_otel
from mercatur.revalidation import REVALIDATE_EVENT


configure_logging()
logger = logging.getLogger("mercatur.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"action": event.name})


def _on_revalidate_requested(event: InternalEvent) -> None:
    payload = event.payload if isinstance(event.payload, dict) else {}
    paths = (payload.get("payload") or {}).get("paths", [])
    logger.debug("cache.revalidate", extra={"action": event.name, "path": ",".join(paths)})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe(REVALIDATE_EVENT, _on_revalidate_requested)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Mercatur API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("mercatur-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
