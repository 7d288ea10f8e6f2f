"""SQLAlchemy 2.0 ORM layer for the shared scheduler store.

Modules
-------
base        ShiftworkBase (declarative base) + TimestampMixin
session     Engine factory, ShiftworkSession, session_scope, init_db
tables      Mapped table classes (JobDefinitionTable, TokenTable, ...)
"""

from __future__ import annotations

from shiftwork.core.orm.base import ShiftworkBase, TimestampMixin
from shiftwork.core.orm.session import (
    ShiftworkSession,
    create_shiftwork_engine,
    init_db,
    session_scope,
    shiftwork_session_factory,
)
from shiftwork.core.orm.tables import *  # noqa: F401,F403
