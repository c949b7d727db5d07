from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from leadflow.api.routes import router as api_router
from leadflow.core.config import get_settings
from leadflow.core.database import SessionLocal
from leadflow.crm.delivery import NotificationConnectionRegistry
from leadflow.crm.expiration.scheduler import LeadExpirationScheduler
from leadflow.logging import configure_logging
from leadflow.middleware.request_context import RequestContextMiddleware
from leadflow.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("leadflow.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    registry = NotificationConnectionRegistry(queue_size=settings.notification_stream_queue_size)
    app.state.notification_registry = registry

    scheduler: LeadExpirationScheduler | None = None
    if settings.lead_expiration_run_in_api:
        scheduler = LeadExpirationScheduler.from_settings(settings, SessionLocal, registry)
        scheduler.start()
    app.state.lead_expiration_scheduler = scheduler
    logger.info("api_started", extra={"state": scheduler.state.value if scheduler else None})

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()
        logger.info("api_stopped")


app = FastAPI(title="Leadflow API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
