from contextlib import asynccontextmanager
from functools import partial
import logging

import stripe
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from meterproxy.config import Settings, get_settings
from meterproxy.auth.api_key_auth import ApiKeyAuthenticator
from meterproxy.core.database import Database
from meterproxy.core.errors import MeterProxyError
from meterproxy.core.errors.middleware import meterproxy_error_handler
from meterproxy.core.errors.registry import error_registry
from meterproxy.core.log_middleware import CorrelationMiddleware
from meterproxy.core.structured_logging import APP_VERSION, setup_logging
from meterproxy.routers import admin, assistant, health, stripe_webhook
from meterproxy.services.assistant_service import AssistantService
from meterproxy.services.llm_providers import create_completion_provider
from meterproxy.services.price_catalog import PriceCatalog
from meterproxy.services.subscription_reconciler import SubscriptionReconciler
from meterproxy.services.subscription_store import SubscriptionStore
from meterproxy.services.usage_meter import UsageMeter
from meterproxy.services.user_store import UserStore

logger = logging.getLogger(__name__)

API_TITLE = "meterproxy API"

API_DESCRIPTION = """
## meterproxy - Metered AI Completions

Proxies completion requests to an upstream AI provider and charges the
provider-reported token usage against the caller's Stripe subscription.

### Authentication

All endpoints except health and the Stripe webhook require an API key.
Include in requests: `X-API-Key: mpx_your_key_here`
"""

TAGS_METADATA = [
    {"name": "health", "description": "Liveness and component checks. No authentication required for /api/health."},
    {"name": "assistant", "description": "Metered completions. **Requires API Key.**"},
    {"name": "stripe", "description": "Stripe webhook receiver. Authenticated by Stripe signature."},
    {"name": "admin", "description": "Subscription overrides and usage inspection. **Requires admin API Key.**"},
]


def build_components(app: FastAPI, settings: Settings) -> None:
    """Construct storage and services and attach them to ``app.state``."""
    database = Database(settings.database_url, echo=settings.debug)
    database.init(run_migrations=settings.run_migrations)

    store = SubscriptionStore(database)
    users = UserStore(database)
    meter = UsageMeter(store, max_attempts=settings.cas_max_attempts)

    app.state.database = database
    app.state.store = store
    app.state.users = users
    app.state.meter = meter
    app.state.reconciler = SubscriptionReconciler(
        database,
        store,
        users,
        PriceCatalog.from_settings(settings),
        max_attempts=settings.cas_max_attempts,
    )
    app.state.assistant = AssistantService(meter, partial(create_completion_provider, settings))
    app.state.authenticator = ApiKeyAuthenticator(
        users,
        settings.get_api_key_secret(),
        cache_ttl=settings.auth_cache_ttl,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    settings: Settings = app.state.settings
    logger.info("Starting meterproxy API v%s (provider=%s)...", APP_VERSION, settings.ai_provider)

    if not error_registry.loaded:
        error_registry.load()

    if settings.stripe_secret_key:
        stripe.api_key = settings.stripe_secret_key
    if not settings.stripe_webhook_secret:
        logger.warning("METERPROXY_STRIPE_WEBHOOK_SECRET not set; webhook deliveries will be rejected")

    build_components(app, settings)
    logger.info("Database initialized")

    yield

    logger.info("Shutting down meterproxy API...")
    app.state.database.close()


def create_app(settings: Settings | None = None, configure_logging: bool = True) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(
            log_level=settings.log_level.upper(),
            log_dir=settings.log_dir,
            json_output=not settings.debug,
        )

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=APP_VERSION,
        openapi_tags=TAGS_METADATA,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # request_id + correlation_id in every log line
    app.add_middleware(CorrelationMiddleware)

    app.add_exception_handler(MeterProxyError, meterproxy_error_handler)

    # Catch-all handler so unhandled exceptions return JSON (not bare text)
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error"},
        )

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(assistant.router, prefix="/api", tags=["assistant"])
    app.include_router(stripe_webhook.router, prefix="/api", tags=["stripe"])
    app.include_router(admin.router, prefix="/api", tags=["admin"])

    @app.get("/", include_in_schema=False)
    async def root():
        return {"name": API_TITLE, "version": APP_VERSION, "docs": "/docs", "health": "/api/health"}

    return app


app = create_app()
