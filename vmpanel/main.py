import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.middleware.sessions import SessionMiddleware

# Local imports
from .core.config import (
    APP_NAME,
    APP_VERSION,
    CORS_ORIGINS,
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_HEADERS,
    SESSION_SECRET,
)
from .core.logging import setup_logging
from .api import health, templates, vms
from .api.common import status_for
from .db import lifecycle as db_lifecycle
from .db.config import get_database_settings
from .db.engine import get_async_engine
from .qemu.errors import VMError
from .services.container import PanelServices, build_services

# Initialize Logging
setup_logging()
logger = logging.getLogger(APP_NAME)


def _error_response(status_code: int, detail, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": detail if isinstance(detail, str) else str(detail)},
        headers=headers,
    )


def create_app(services: Optional[PanelServices] = None, *, session_secret: str = SESSION_SECRET) -> FastAPI:
    """Build the API application.

    When ``services`` is given (tests) it is used as-is and the database is left
    alone; otherwise services are assembled from configuration at startup and
    the engine is checked, and optionally migrated with ``create_all``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting %s v%s", APP_NAME, APP_VERSION)
        managed = services is None
        if managed:
            db_settings = get_database_settings()
            await db_lifecycle.on_startup(get_async_engine(), create_all=db_settings.create_all)
            app.state.services = build_services()
            await app.state.services.recover_interrupted_jobs()
        try:
            yield
        finally:
            logger.info("Shutting down %s", APP_NAME)
            await app.state.services.shutdown()
            if managed:
                await db_lifecycle.on_shutdown(get_async_engine())

    app = FastAPI(
        title=APP_NAME,
        version=APP_VERSION,
        description="REST API for provisioning and operating QEMU/KVM virtual machines",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # Configure CORS
    if CORS_ORIGINS:
        logger.info("Enabling CORS for origins: %s", CORS_ORIGINS)
        app.add_middleware(
            CORSMiddleware,
            allow_origins=CORS_ORIGINS,
            allow_credentials=CORS_ALLOW_CREDENTIALS,
            allow_methods=CORS_ALLOW_METHODS,
            allow_headers=CORS_ALLOW_HEADERS,
        )
    else:
        logger.warning("No CORS origins defined in config.yaml; CORS disabled.")

    if session_secret == "change-me":
        logger.warning("SESSION_SECRET is not set; session cookies use an insecure default key.")
    app.add_middleware(SessionMiddleware, secret_key=session_secret, same_site="lax")

    # Simple request timing middleware for visibility
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.time()
        response = await call_next(request)
        duration_ms = int((time.time() - start) * 1000)
        logger.info(
            "%s %s -> %d (%d ms)",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        return response

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        return _error_response(exc.status_code, exc.detail, getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        messages = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
            messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
        return _error_response(422, "; ".join(messages) or "Invalid request")

    @app.exception_handler(VMError)
    async def vm_error_handler(request: Request, exc: VMError):
        return _error_response(status_for(exc), str(exc))

    # Routers
    app.include_router(health.router, prefix='/api')
    app.include_router(vms.router, prefix='/api')
    app.include_router(templates.router, prefix='/api')

    @app.get("/", tags=["Root"])
    async def root():
        return {
            "message": f"{APP_NAME} API is running",
            "version": APP_VERSION,
            "docs": "/docs",
        }

    return app


app = create_app()
