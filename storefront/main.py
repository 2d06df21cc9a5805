from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from storefront.api.routes import router as api_router
from storefront.core.config import get_settings
from storefront.events import InternalEvent, event_bus
from storefront.logging import configure_logging
from storefront.middleware.correlation_id import CorrelationIdMiddleware
from storefront.middleware.request_logging import RequestLoggingMiddleware
from storefront.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("storefront.lifecycle")
_subscriptions_registered = False

_pricing_event_types = [
    "catalog.price_tiers.replaced",
    "catalog.product.pricing_mode_changed",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_pricing_event(event: InternalEvent) -> None:
    logger.info(
        "pricing_event",
        extra={"event_name": event.name, "product_id": event.payload.get("product_id")},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _pricing_event_types:
            event_bus.subscribe(event_name, _on_pricing_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Storefront API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

setup_otel(get_settings())

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
