from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.errors import CRMError, InternalError, ValidationFailedError
from app.core.events import InternalEvent, event_bus
from app.crm.api import error_response
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import instrument_app, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

_domain_event_types = [
    "crm.tenant.created",
    "crm.lead.created",
    "crm.lead.updated",
    "crm.lead.deleted",
    "crm.lead.converted",
    "crm.account.created",
    "crm.account.updated",
    "crm.account.deleted",
    "crm.contact.created",
    "crm.contact.updated",
    "crm.contact.deleted",
    "crm.opportunity.created",
    "crm.opportunity.updated",
    "crm.opportunity.deleted",
    "crm.note.created",
    "crm.note.deleted",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_crm_domain_event(event: InternalEvent) -> None:
    envelope = event.payload if isinstance(event.payload, dict) else {}
    logger.info(
        "domain_event",
        extra={
            "event_name": event.name,
            "tenant_id": envelope.get("tenant_id"),
            "actor_user_id": envelope.get("actor_user_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _domain_event_types:
            event_bus.subscribe(event_name, _on_crm_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Tenant CRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": list(item.get("loc", ())), "msg": item.get("msg"), "type": item.get("type")}
        for item in exc.errors()
    ]
    return error_response(
        request,
        ValidationFailedError("Request validation failed", details=details),
        code="request_validation_failed",
    )


@app.exception_handler(CRMError)
async def crm_error_handler(request: Request, exc: CRMError) -> JSONResponse:
    return error_response(request, exc, code=f"crm_{exc.kind.lower()}")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", extra={"path": request.url.path, "error": str(exc)})
    return error_response(request, InternalError("Server error"), code="internal_error")


settings = get_settings()
if settings.otel_enabled:
    setup_otel("crm-api", True)

instrument_app(app)
