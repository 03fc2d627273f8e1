"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import health, navigation, sessions, trips
from .config import settings
from .persistence.trips import SupabaseTripStore, TripStore
from .services.navigation.recalculation import RoutingClient
from .services.trips.session import SessionRegistry


def create_app(store: TripStore | None = None, router: RoutingClient | None = None) -> FastAPI:
    """Build the API.

    ``store`` and ``router`` default to Supabase and OSRM; tests pass in-memory
    replacements. The OSRM client is created lazily when navigation first starts.
    """
    registry = SessionRegistry(store or SupabaseTripStore(), router)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logging.info("Shutting down: closing %d driver session(s)", len(app.state.registry))
        app.state.registry.close_all()

    app = FastAPI(
        title=settings.app_name,
        root_path="",
        lifespan=lifespan,
    )
    app.state.registry = registry
    if settings.frontend_allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.frontend_allowed_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Root endpoint for diagnostics
    @app.get("/")
    def root():
        return {
            "service": settings.app_name,
            "status": "running",
            "api_prefix": settings.api_prefix,
            "health": f"{settings.api_prefix}/health",
            "docs": "/docs",
        }

    app.include_router(health.router, prefix=settings.api_prefix)
    app.include_router(sessions.router, prefix=settings.api_prefix)
    app.include_router(trips.router, prefix=settings.api_prefix)
    app.include_router(navigation.router, prefix=settings.api_prefix)
    return app


app = create_app()
