from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from lunachat.config import settings
from lunachat.routers import access, billing, chat, health, webhooks
from lunachat.clients import build_clients, close_clients
from lunachat.core.database import init_db, close_db
from lunachat.core.structured_logging import setup_logging
from lunachat.core.errors import LunaChatError
from lunachat.core.errors.registry import error_registry
from lunachat.core.errors.middleware import lunachat_error_handler
from lunachat.core.log_middleware import CorrelationMiddleware

# Initialize structured logging before any logger calls
setup_logging(settings.log_directory)

logger = logging.getLogger(__name__)

# API metadata
API_TITLE = "LunaChat API"
API_VERSION = settings.app_version

API_DESCRIPTION = """
## LunaChat - Metered Conversations

Chat with the LunaChat persona. Every exchange is priced from the model's
reported token usage and debited from the account's energy balance.
Subscriptions replenish energy once per billing cycle.

### Authentication

Account, chat and billing endpoints require a Firebase ID token:
`Authorization: Bearer <id_token>`
"""

TAGS_METADATA = [
    {"name": "health", "description": "Liveness and client readiness. No authentication required."},
    {"name": "chat", "description": "Metered chat exchanges and history. **Requires ID token.**"},
    {"name": "account", "description": "Account provisioning and balance. **Requires ID token.**"},
    {"name": "billing", "description": "Subscription checkout and billing portal. **Requires ID token.**"},
    {"name": "webhooks", "description": "Stripe subscription lifecycle events. Signature verified."},
    {"name": "access", "description": "Invitation codes and registration checks. No authentication required."},
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Starting LunaChat API v%s...", API_VERSION)

    error_registry.load()

    init_db()  # SQLite + Alembic migrations
    logger.info("Database initialized")

    # Client handles may be pre-seeded (tests, embedding apps)
    if getattr(app.state, "clients", None) is None:
        app.state.clients = build_clients()
    logger.info("External clients: %s", app.state.clients.status())

    yield

    logger.info("Shutting down LunaChat API...")
    await close_clients(app.state.clients)
    close_db()
    logger.info("Database connection closed")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        openapi_tags=TAGS_METADATA,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # request_id + correlation_id in every log
    app.add_middleware(CorrelationMiddleware)

    app.add_exception_handler(LunaChatError, lunachat_error_handler)

    # Catch-all handler so unhandled exceptions return JSON (not bare text)
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal Server Error"},
        )

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(chat.router, prefix="/api/chat", tags=["chat"])
    app.include_router(billing.account_router, prefix="/api/account", tags=["account"])
    app.include_router(billing.billing_router, prefix="/api/billing", tags=["billing"])
    app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])
    app.include_router(access.router, prefix="/api/access", tags=["access"])

    @app.get("/", tags=["health"], summary="API Root", description="Returns basic API information and links to documentation.")
    async def root():
        return {
            "name": API_TITLE,
            "version": API_VERSION,
            "status": "running",
            "docs": {
                "swagger": "/docs",
                "redoc": "/redoc",
                "openapi": "/openapi.json",
            },
        }

    return app


# Create the app instance
app = create_app()
