"""SQLAlchemy engine factory, session class and transaction helpers.

This module provides:

* ``create_shiftwork_engine``   -- Create a SA engine from a URL.
* ``ShiftworkSession``          -- Session with ``expire_on_commit=False``.
* ``shiftwork_session_factory`` -- ``sessionmaker`` producing ShiftworkSession.
* ``session_scope``             -- Commit-or-rollback unit of work.
* ``init_db``                   -- Create every table on an engine.

Every worker, processor and API request opens its own session; the database
is the only synchronization point between them.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import ArgumentError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from shiftwork.core.errors import ConfigError, DatabaseError


def create_shiftwork_engine(
    url: str = "sqlite:///shiftwork.db",
    *,
    echo: bool = False,
    pool_size: int | None = None,
    max_overflow: int | None = None,
    busy_timeout: float = 30.0,
    **kwargs: Any,
) -> Engine:
    """Create a SQLAlchemy engine with sane defaults.

    Parameters
    ----------
    url:
        Database URL (``sqlite:///…``, ``postgresql+psycopg://…``, etc.)
    echo:
        If ``True``, log all SQL.
    pool_size, max_overflow:
        Connection pool parameters (ignored for SQLite).
    busy_timeout:
        Seconds a SQLite connection waits on a locked database before
        raising; several workers write to the same file.

    Raises
    ------
    ConfigError
        If *url* cannot be parsed or names an unknown dialect.
    """
    try:
        return _create_engine(url, echo, pool_size, max_overflow, busy_timeout, kwargs)
    except ArgumentError as exc:
        raise ConfigError(f"invalid database_url {url!r}: {exc}", cause=exc) from exc


def _create_engine(
    url: str,
    echo: bool,
    pool_size: int | None,
    max_overflow: int | None,
    busy_timeout: float,
    kwargs: dict[str, Any],
) -> Engine:
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", busy_timeout)
        engine = _sa_create_engine(url, echo=echo, connect_args=connect_args, **kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    pool_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if pool_size is not None:
        pool_kwargs["pool_size"] = pool_size
    if max_overflow is not None:
        pool_kwargs["max_overflow"] = max_overflow

    return _sa_create_engine(url, echo=echo, **pool_kwargs, **kwargs)


class ShiftworkSession(Session):
    """Pre-configured session with ``expire_on_commit=False``.

    Rows handed to a worker outlive the claim transaction; expiring them on
    commit would trigger lazy reloads from another thread.
    """

    def __init__(self, bind: Engine | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("expire_on_commit", False)
        super().__init__(bind=bind, **kwargs)


def shiftwork_session_factory(engine: Engine) -> sessionmaker[ShiftworkSession]:
    """Return a ``sessionmaker`` bound to *engine* that produces ``ShiftworkSession`` instances."""
    return sessionmaker(bind=engine, class_=ShiftworkSession)


@contextmanager
def session_scope(factory: sessionmaker[ShiftworkSession]) -> Iterator[ShiftworkSession]:
    """Open a session, commit on success, roll back on any exception.

    Operational store failures (locked database, dropped connection) surface
    as a retryable :class:`DatabaseError`.
    """
    session = factory()
    try:
        yield session
        session.commit()
    except OperationalError as exc:
        session.rollback()
        raise DatabaseError(f"store unavailable: {exc.orig}", cause=exc) from exc
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Engine) -> None:
    """Create all tables (idempotent)."""
    from shiftwork.core.orm.base import ShiftworkBase
    import shiftwork.core.orm.tables  # noqa: F401

    ShiftworkBase.metadata.create_all(engine)
