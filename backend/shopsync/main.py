"""FastAPI application entrypoint.

Configures CORS, includes routers, and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .config import get_settings  # noqa: E402
from .database import Base, engine  # noqa: E402
from .routers import shop_sync as shop_sync_router  # noqa: E402
from .telemetry import init_observability  # noqa: E402
from . import schemas  # noqa: E402


def create_app() -> FastAPI:
    init_observability()

    app = FastAPI(
        title="shopsync API",
        description="""
        Mirror of TikTok Shop orders, products, settlements and product
        performance in a local database.

        This API provides endpoints for:
        - Incremental and first-time syncs per shop
        - Cache staleness flags that drive client refresh prompts
        - Reads of the mirrored data and derived shop metrics
        - A cron-triggered sweep over every connected shop
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-Proto from the load balancer
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()

    # BACKEND_CORS_ORIGINS is a comma-separated list
    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    logger.info("[CORS] Allowed origins: %s", allowed_origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(shop_sync_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    @app.on_event("startup")
    def create_tables():
        """Create mirror tables if missing (no migration tool)."""
        Base.metadata.create_all(bind=engine)
        logger.info("[STARTUP] Database tables ready")

    return app


app = create_app()
