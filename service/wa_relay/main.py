"""FastAPI entry-point for the WhatsApp relay."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import router
from .backend.bridge_session import BridgeSessionFactory
from .config import Settings, get_settings
from .credentials import FileCredentialStore
from .errors import RelayError
from .logging_config import configure_logging
from .supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)


def build_supervisor(settings: Settings) -> ConnectionSupervisor:
    return ConnectionSupervisor(
        settings=settings,
        session_factory=BridgeSessionFactory(settings),
        credential_store=FileCredentialStore(settings.auth_dir),
    )


def create_app(
    settings: Optional[Settings] = None,
    supervisor: Optional[ConnectionSupervisor] = None,
) -> FastAPI:
    settings = settings or get_settings()
    supervisor = supervisor or build_supervisor(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level, settings.log_directory, settings.log_retention_days)
        logger.info("Expirel WhatsApp relay starting on port %d", settings.port)
        logger.info("QR code: http://localhost:%d/qr", settings.port)
        try:
            await supervisor.launch()
        except Exception as e:
            logger.exception(f"Failed to start connection supervisor: {e}")
            logger.error("Application startup failed - POST /init to retry")
            # Don't re-raise - allow app to start in degraded mode
        yield
        try:
            await supervisor.shutdown()
            logger.info("Application shutdown complete")
        except Exception as e:
            logger.exception(f"Error during shutdown: {e}")

    app = FastAPI(title="wa-relay", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.supervisor = supervisor

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        logger.warning(f"{type(exc).__name__} in {request.url.path}: {exc}")
        return JSONResponse({"success": False, "error": exc.user_message}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle request validation errors gracefully."""
        logger.warning(f"Validation error in {request.url.path}: {exc}")
        return JSONResponse(
            status_code=422,
            content={"success": False, "error": str(exc)},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all exception handler to prevent application crashes."""
        logger.exception(f"Unhandled exception in {request.url.path}: {exc}")
        return JSONResponse(
            {"success": False, "error": str(exc) or "Internal server error"},
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.debug(f"{request.method} {request.url.path}")
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()
