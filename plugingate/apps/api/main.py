from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi

from plugingate.apps.api.errors import register_exception_handlers
from plugingate.apps.api.routes.billing import router as billing_router
from plugingate.apps.api.routes.health import router as health_router
from plugingate.apps.api.routes.plans import router as plans_router
from plugingate.apps.api.routes.plugin_auth import router as plugin_auth_router
from plugingate.core.config import get_settings
from plugingate.core.logging import configure_logging


logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="plugingate API", version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    # The sandboxed plugin and the website (handoff delivery) are the only browser callers.
    # Credentials stay off: the website forwards its session in the session header.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.plugin_allowed_origin, settings.website_origin],
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", settings.web_session_header],
        expose_headers=["X-Request-Id", "Retry-After"],
        max_age=600,
    )

    register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(plugin_auth_router)
    app.include_router(plans_router)
    app.include_router(billing_router)

    def custom_openapi() -> dict:
        # Inject bearer auth into the OpenAPI schema for plugin-facing routes.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="plugingate API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        protected_paths = {"/user-info", "/track-usage", "/logout"}
        for path, operations in schema.get("paths", {}).items():
            if path not in protected_paths:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]

    return app


app = create_app()
