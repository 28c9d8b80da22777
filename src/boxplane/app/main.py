"""Box control plane FastAPI application factory.

The create_app() factory is the single entry point for building the ASGI
application. It wires middleware (request-ID, metrics, CORS), the error
handlers, the box and cronjob routes, and the runtime (stores, provider,
workflow engine) via dependency injection.

Usage:
    # Local development (in-memory stores and provider)
    from boxplane.app import create_app, BoxPlaneSettings
    app = create_app(BoxPlaneSettings())

    # Non-local (Supabase stores, provider from settings)
    app = create_app(BoxPlaneSettings.from_env())

    # Testing (full DI control)
    app = create_app(settings, provider=fake_provider, engine=engine)
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .errors import BoxPlaneError, ErrorCode, HTTP_STATUS_BY_CODE
from .observability.metrics import render_latest
from .observability.middleware import MetricsMiddleware, RequestIdMiddleware
from .routes.boxes import create_boxes_router
from .routes.cronjobs import create_cronjobs_router
from .runtime import BoxPlaneRuntime, build_runtime
from .settings import BoxPlaneSettings

logger = logging.getLogger(__name__)


def _error_response(request: Request, status_code: int, payload: dict[str, Any]) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        payload = {**payload, "request_id": request_id}
    return JSONResponse(status_code=status_code, content=payload)


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(BoxPlaneError)
    async def boxplane_error(request: Request, exc: BoxPlaneError):
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return _error_response(request, exc.http_status, exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "invalid request")
        return _error_response(
            request,
            HTTP_STATUS_BY_CODE[ErrorCode.VALIDATION_FAILED],
            {
                "code": ErrorCode.VALIDATION_FAILED.value,
                "message": f"{location}: {message}" if location else message,
                "details": {"errors": [
                    {"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg")}
                    for e in errors
                ]},
            },
        )


# ── Factory ─────────────────────────────────────────────────────────


def create_app(
    settings: BoxPlaneSettings | None = None,
    *,
    runtime: BoxPlaneRuntime | None = None,
    **runtime_overrides: Any,
) -> FastAPI:
    """Create a configured box control-plane application.

    Args:
        settings: Application settings. Defaults to local-dev settings.
        runtime: A pre-built runtime. When None one is built from
            ``settings`` and ``runtime_overrides`` (see ``build_runtime``).

    Raises:
        ValueError: If settings validation fails.
    """
    if settings is None:
        settings = runtime.settings if runtime is not None else BoxPlaneSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            "Box control plane settings validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    if runtime is None:
        runtime = build_runtime(settings, **runtime_overrides)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Box control plane startup (environment=%s, provider=%s)",
            settings.environment, runtime.provider.name,
        )
        await runtime.start()
        try:
            yield
        finally:
            await runtime.close()
            logger.info("Box control plane shutdown")

    app = FastAPI(
        title="Box Control Plane",
        description="Provision and deploy sandboxed compute boxes",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.settings = settings

    # ── Middleware stack (applied in reverse order) ──────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)

    _install_error_handlers(app)

    # ── Routes ──────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "environment": settings.environment,
            "provider": runtime.provider.name,
        }

    @app.get("/metrics")
    async def metrics():
        payload, content_type = render_latest()
        return Response(content=payload, media_type=content_type)

    app.include_router(
        create_boxes_router(runtime.boxes, runtime.steps, runtime.orchestrator),
    )
    app.include_router(create_cronjobs_router(runtime.cronjobs))

    return app


def run() -> None:
    """Console entry point: settings from the environment, served by uvicorn."""
    import uvicorn

    from .observability.logging import configure_logging

    settings = BoxPlaneSettings.from_env()
    configure_logging(level=settings.log_level, json_output=settings.log_json)
    uvicorn.run(
        create_app(settings),
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        log_config=None,
    )


# For uvicorn, use --factory flag:
#   uvicorn boxplane.app.main:create_app --factory
