"""Database session and engine helpers."""

from __future__ import annotations

from collections.abc import Iterator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import get_settings

_engine_cache: dict[str, Engine] = {}
_sessionmaker_cache: dict[str, sessionmaker[Session]] = {}


def _resolve_database_url(override: str | None = None) -> str:
    settings = get_settings()
    return override or settings.database_url


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine(database_url: str | None = None) -> Engine:
    """Return (and cache) an engine for the given database URL."""
    url = _resolve_database_url(database_url)
    engine = _engine_cache.get(url)
    if engine is None:
        engine = create_engine(url, echo=False, future=True)
        if engine.dialect.name == "sqlite":
            event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        _engine_cache[url] = engine
    return engine


def get_sessionmaker(database_url: str | None = None) -> sessionmaker[Session]:
    """Return (and cache) a sessionmaker for the given database URL."""
    url = _resolve_database_url(database_url)
    factory = _sessionmaker_cache.get(url)
    if factory is None:
        factory = sessionmaker(get_engine(url), expire_on_commit=False, class_=Session)
        _sessionmaker_cache[url] = factory
    return factory


def get_session() -> Iterator[Session]:
    """Yield a database session using the configured engine."""
    session_factory = get_sessionmaker()
    with session_factory() as session:
        yield session


def dispose_engine(database_url: str | None = None) -> None:
    """Dispose the cached engine/sessionmaker for the given database URL."""
    url = _resolve_database_url(database_url)
    engine = _engine_cache.pop(url, None)
    if engine is not None:
        engine.dispose()
    _sessionmaker_cache.pop(url, None)
