"""Cosmic Chat Backend Application.

This is the main entry point for the realtime messaging backend: user
accounts and presence, public rooms, direct messages, typing indicators and
read receipts, delivered over a WebSocket push channel with an HTTP API
alongside it.

Modules:
    - auth: Accounts, password credentials and session tokens
    - chat: Messaging core (store, rooms, presence, typing, router, gateway)
    - storage: In-memory and DuckDB persistence backends
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.auth.router import router as auth_router
from app.chat.router import router as chat_router
from app.chat.services import build_services
from app.config import AppConfig, get_config
from app.errors import ChatError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# httpx/httpcore log every connection made by the test client.
for _noisy in (
    "httpx",
    "httpcore",
    "websockets",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Configuration to run with. Defaults to the process-wide
            config loaded from ``cosmic.settings.yaml``.
    """
    app_config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Startup
        # Apply configured log level to root logger so that
        # `logging.level: "debug"` in cosmic.settings.yaml activates DEBUG output.
        configured_level = getattr(logging, app_config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", app_config.logging.level.upper())

        services = build_services(app_config)
        services.start()
        app.state.chat = services
        logger.info(
            f"Server running on http://{app_config.server.host}:{app_config.server.port}"
        )

        yield  # Application runs here

        # Shutdown
        await services.stop()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Cosmic Chat API",
        description="Realtime messaging backend: rooms, direct messages, presence",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth_router)
    app.include_router(chat_router)

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        retry_after = None
        headers = None
        if exc.retryable:
            retry_after = request.app.state.chat.config.gateway.transient_retry_ms
            headers = {"Retry-After": str(max(1, retry_after // 1000))}
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_payload(retry_after),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"error": "invalid_input", "detail": str(exc.errors())},
        )

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
