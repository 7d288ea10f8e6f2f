"""
FastAPI dependency injection — settings, sessions and engine services.

Usage in routers::

    from shiftwork.api.deps import DbSession, Lifecycle

    @router.post("/instances/{instance_id}/cancel")
    def cancel(instance_id: int, session: DbSession, lifecycle: Lifecycle):
        ...

Each request gets its own session; the unit of work commits when the
endpoint returns and rolls back when it raises.
"""

from __future__ import annotations

from collections.abc import Generator
from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from sqlalchemy.orm import sessionmaker

from shiftwork.core.orm.session import (
    ShiftworkSession,
    create_shiftwork_engine,
    session_scope,
    shiftwork_session_factory,
)
from shiftwork.core.settings import ShiftworkSettings, get_settings
from shiftwork.definitions import DefinitionService
from shiftwork.engine.lifecycle import LifecycleController
from shiftwork.engine.processor import build_lifecycle
from shiftwork.worker.registry import WorkerRegistry

# ── Session factory (one engine per URL) ─────────────────────────────────


@lru_cache(maxsize=4)
def _factory_for(database_url: str, echo: bool) -> sessionmaker[ShiftworkSession]:
    return shiftwork_session_factory(create_shiftwork_engine(database_url, echo=echo))


def get_session_factory(
    settings: Annotated[ShiftworkSettings, Depends(get_settings)],
) -> sessionmaker[ShiftworkSession]:
    return _factory_for(settings.database_url, settings.echo_sql)


# ── Session (per-request) ────────────────────────────────────────────────


def get_session(
    factory: Annotated[sessionmaker[ShiftworkSession], Depends(get_session_factory)],
) -> Generator[ShiftworkSession, None, None]:
    """Yield a session wrapped in :func:`session_scope`."""
    with session_scope(factory) as session:
        yield session


# ── Services ─────────────────────────────────────────────────────────────


def get_lifecycle(
    settings: Annotated[ShiftworkSettings, Depends(get_settings)],
) -> LifecycleController:
    return build_lifecycle(settings)


def get_definitions() -> DefinitionService:
    return DefinitionService()


def get_registry(
    settings: Annotated[ShiftworkSettings, Depends(get_settings)],
) -> WorkerRegistry:
    return WorkerRegistry(heartbeat_timeout=settings.heartbeat_timeout)


# ── Convenience type aliases ─────────────────────────────────────────────

Settings = Annotated[ShiftworkSettings, Depends(get_settings)]
DbSession = Annotated[ShiftworkSession, Depends(get_session)]
Lifecycle = Annotated[LifecycleController, Depends(get_lifecycle)]
Definitions = Annotated[DefinitionService, Depends(get_definitions)]
Registry = Annotated[WorkerRegistry, Depends(get_registry)]
