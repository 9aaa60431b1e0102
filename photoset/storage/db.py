"""SQLAlchemy engine/session primitives and the database health check."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Generator, Optional, Tuple

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from photoset.core.config import get_settings
from photoset.core.logger import get_logger


Base = declarative_base()


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    # SQLite ignores ON DELETE CASCADE unless the pragma is set per connection.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(database_url: str, **overrides: Any) -> Engine:
    kwargs: dict[str, object] = {"pool_pre_ping": True, "future": True}
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False}
    kwargs.update(overrides)

    engine = create_engine(database_url, **kwargs)
    if is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return build_engine(get_settings().database_url)


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    return sessionmaker(bind=get_engine(), autoflush=False, autocommit=False, expire_on_commit=False)


def get_session() -> Generator[Session, None, None]:
    session = get_session_factory()()
    try:
        yield session
    finally:
        session.close()


def create_schema(engine: Engine) -> None:
    """Create the generation tables directly from the ORM models.

    Meant for throwaway SQLite databases. Deployed databases are migrated
    with alembic (``migrations/versions``).
    """

    import photoset.storage.models  # noqa: F401

    Base.metadata.create_all(engine)


def check_connection() -> Tuple[bool, Optional[str]]:
    try:
        with get_engine().connect() as connection:
            connection.execute(text("SELECT 1"))
        return True, None
    except Exception as exc:
        get_logger("photoset.storage").warning("database_health_check_failed", error=str(exc))
        return False, str(exc)
