"""
FastAPI application factory.

``create_app()`` wires routers, error handlers and lifespan events into a
single ``FastAPI`` instance.

Tags:
    shiftwork, api, app-factory, FastAPI
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.orm import sessionmaker

from shiftwork import __version__
from shiftwork.api.deps import get_session_factory
from shiftwork.api.errors import shiftwork_error_handler, unhandled_exception_handler
from shiftwork.core.errors import ShiftworkError
from shiftwork.core.logging import get_logger
from shiftwork.core.orm.session import ShiftworkSession, init_db
from shiftwork.core.settings import ShiftworkSettings, get_settings

logger = get_logger("shiftwork.api")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create missing tables on startup."""
    logger.info("api_starting", version=app.version)
    factory = app.state.session_factory or get_session_factory(app.state.settings)
    init_db(factory.kw["bind"])
    yield
    logger.info("api_stopping")


def create_app(
    *,
    settings: ShiftworkSettings | None = None,
    session_factory: sessionmaker[ShiftworkSession] | None = None,
) -> FastAPI:
    """Build and return a fully-configured FastAPI application.

    Parameters
    ----------
    settings : ShiftworkSettings | None
        Override settings (useful for testing).  When ``None`` the cached
        singleton from :func:`get_settings` is used.
    session_factory : sessionmaker | None
        Use this factory instead of one built from ``settings.database_url``.
    """
    settings = settings or get_settings()
    prefix = settings.api_prefix
    app = FastAPI(
        title="shiftwork",
        version=__version__,
        lifespan=lifespan,
        docs_url=f"{prefix}/docs",
        openapi_url=f"{prefix}/openapi.json",
    )

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.dependency_overrides[get_settings] = lambda: settings
    if session_factory is not None:
        app.dependency_overrides[get_session_factory] = lambda: session_factory

    # ── Exception handlers ───────────────────────────────────────────
    app.add_exception_handler(ShiftworkError, shiftwork_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # ── Routers ──────────────────────────────────────────────────────
    from shiftwork.api.routers import definitions, instances, workers

    app.include_router(definitions.router, prefix=prefix, tags=["definitions"])
    app.include_router(instances.router, prefix=prefix, tags=["instances"])
    app.include_router(workers.router, prefix=prefix, tags=["workers"])

    @app.get("/health", tags=["health"])
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    return app
