from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from dealflow.api.routes import router as api_router
from dealflow.core.config import get_settings
from dealflow.core.context import RequestContextMiddleware
from dealflow.core.events import PLACEMENT_OUTCOME_EVENTS, InternalEvent, event_bus
from dealflow.crm.api import error_response
from dealflow.logging import configure_logging
from dealflow.middleware.correlation_id import CorrelationIdMiddleware
from dealflow.middleware.rate_limit import CrmMutationRateLimitMiddleware
from dealflow.middleware.request_logging import RequestLoggingMiddleware
from dealflow.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("dealflow.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_placement_outcome(event: InternalEvent) -> None:
    payload = event.payload.get("payload") or {}
    logger.info(
        "placement_outcome",
        extra={
            "event_name": event.name,
            "pipeline_id": payload.get("pipeline_id"),
            "placement_id": event.placement_id,
            "to_stage_id": payload.get("to_stage_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe(PLACEMENT_OUTCOME_EVENTS, _on_placement_outcome)
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Dealflow API", version="0.1.0", lifespan=lifespan)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        kind="validation",
        code="request_validation_failed",
        message="request body or parameters are invalid",
        details=jsonable_encoder(exc.errors()),
    )


settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
