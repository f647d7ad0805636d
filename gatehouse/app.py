from __future__ import annotations

import asyncio
import contextlib
import re
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from gatehouse.api.error_handling import (
    register_exception_handlers,
    service_error_response,
    store_unavailable_response,
)
from gatehouse.api.routes import health, router
from gatehouse.config import Settings, get_settings
from gatehouse.logging import get_logger, set_correlation_id
from gatehouse.service.context import RequestContext
from gatehouse.service.errors import ServiceError
from gatehouse.service.runtime import Runtime, run_with_deadline
from gatehouse.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

__version__ = "0.1.0"

_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _allowed_origins(settings: Settings) -> list[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # local dev hosts; never a wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the HTTP application around a single ``Runtime``."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = Runtime(settings)
        app.state.runtime = runtime
        sweep_task = asyncio.create_task(runtime.sweep_forever())
        logger.info("app_started", version=__version__, environment=settings.environment.value)
        try:
            yield
        finally:
            sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweep_task
            await runtime.close()
            logger.info("runtime_cleanup_complete")

    app = FastAPI(title="Gatehouse", version=__version__, lifespan=lifespan)
    app.state.settings = settings

    # Registered innermost first: the last middleware added runs outermost.

    @app.middleware("http")
    async def security_pipeline(request: Request, call_next):
        """Deadline, rate limit, identity resolution and CSRF, in that order."""
        runtime: Runtime = request.app.state.runtime
        engine = runtime.engine
        ctx = RequestContext.build(
            request.method,
            request.url.path,
            headers=dict(request.headers),
            cookies=request.cookies,
            client_ip=request.client.host if request.client else None,
        )

        async def _run():
            decision = await engine.enforce_rate(ctx)
            request.state.identity = await engine.authenticate(ctx)
            engine.require_csrf(ctx)
            response = await call_next(request)
            if decision is not None:
                for name, value in decision.headers().items():
                    response.headers.setdefault(name, value)
            return response

        try:
            return await run_with_deadline(_run(), settings.request_timeout_seconds)
        except ServiceError as exc:
            logger.warning(
                "request_rejected",
                path=ctx.path,
                method=ctx.method,
                status_code=exc.status_code,
                error_code=exc.error_code,
            )
            return service_error_response(exc, production=settings.is_production)
        except StoreUnavailableError as exc:
            logger.error("store_unavailable", path=ctx.path, operation=exc.operation)
            return store_unavailable_response()

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        response.headers.setdefault(
            "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
        )
        if request.url.scheme == "https" and settings.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        response.headers.setdefault(
            "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
        )
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Adopt a well-formed client X-Request-ID or generate one."""
        client_request_id = request.headers.get("X-Request-ID")
        if client_request_id and not _REQUEST_ID_PATTERN.match(client_request_id):
            client_request_id = None
        correlation_id = set_correlation_id(client_request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "X-API-Key",
            settings.csrf_header_name,
            "X-Request-ID",
        ],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=3600,
    )

    register_exception_handlers(app, settings)
    app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"], tags=["health"])
    app.add_api_route("/health", health, methods=["GET"], tags=["health"], include_in_schema=False)
    return app


__all__ = ["create_app", "__version__"]
