"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import threading

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from dubtrack.core.config import get_settings
from dubtrack.core.logging_safety import configure_logging
from dubtrack.errors import ApiError
from dubtrack.repositories.memory import InMemoryStore
from dubtrack.routes import (
    dialogues_router,
    episodes_router,
    internal_router,
    projects_router,
    queue_router,
    uploads_router,
)
from dubtrack.schemas.error import ErrorResponse
from dubtrack.services.tenant_router import TenantRouter

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    configure_logging(get_settings().log_level)
    yield
    for name in ("job_queue", "upload_coordinator"):
        component = getattr(app.state, name, None)
        if component is not None:
            component.shutdown(wait=False)
            logger.info("app.component_stopped name=%s", name)


def create_app() -> FastAPI:
    app = FastAPI(title="Dubtrack API", version="0.3.0", lifespan=_lifespan)
    app.state.store = InMemoryStore()
    app.state.tenant_router = TenantRouter(app.state.store)
    app.state.components_lock = threading.RLock()

    @app.exception_handler(ApiError)
    async def handle_api_error(_, exc: ApiError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.payload.model_dump(mode="json", exclude_none=True),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg", "")}
            for error in exc.errors()
        ]
        logger.info(
            "request.invalid method=%s path=%s errors=%s",
            request.method,
            request.url.path,
            len(errors),
        )
        payload = ErrorResponse(code="INVALID_INPUT", message="Invalid request payload", details={"errors": errors})
        return JSONResponse(status_code=400, content=payload.model_dump(mode="json"))

    api_prefix = "/api/v1"
    app.include_router(projects_router, prefix=api_prefix)
    app.include_router(uploads_router, prefix=api_prefix)
    app.include_router(episodes_router, prefix=api_prefix)
    app.include_router(dialogues_router, prefix=api_prefix)
    app.include_router(queue_router, prefix=api_prefix)
    app.include_router(internal_router, prefix=api_prefix)

    return app


app = create_app()
