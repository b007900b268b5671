"""tokensync API — FastAPI application factory.

The app factory creates a FastAPI instance with:
- Optional CORS middleware (for a browser dashboard on another origin)
- Lifespan handler that builds the runtime ``Services`` from the environment
  and releases their pools on shutdown
- Health endpoint at GET /api/health
- The credential upsert and OAuth routers
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tokensync import __version__
from tokensync.api.middleware import register_error_handlers
from tokensync.api.routers.oauth import router as oauth_router
from tokensync.api.routers.tokens import router as tokens_router
from tokensync.config import load_config
from tokensync.services import Services, build_services, close_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle for the document store and OAuth client.

    When the app was created with prebuilt services (tests, embedding) they
    are used as-is and left open on shutdown.
    """
    owned = False
    if getattr(app.state, "services", None) is None:
        config = load_config()
        app.state.services = await build_services(config)
        owned = True

    yield

    if owned:
        await close_services(app.state.services)
        app.state.services = None


def create_app(
    services: Services | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    services:
        Prebuilt runtime components.  When omitted, the lifespan handler
        builds them from the environment at startup.
    cors_origins:
        Allowed CORS origins.  No CORS middleware is installed when empty.
    """
    app = FastAPI(
        title="tokensync API",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.services = services

    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    register_error_handlers(app)

    app.include_router(tokens_router)
    app.include_router(oauth_router)

    @app.get("/api/health")
    async def health():
        services = app.state.services
        return {
            "status": "ok",
            "oauth": services.flows.provider if services and services.flows else None,
        }

    return app
