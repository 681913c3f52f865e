from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from workspace_store.config import settings


def _configure_sqlite_connection(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    # Match PostgreSQL: LIKE is case-sensitive unless mode="insensitive" asks otherwise.
    cursor.execute("PRAGMA case_sensitive_like=ON")
    cursor.close()


def build_engine(url: str, **kwargs: Any) -> Engine:
    """Create an engine for ``url``; SQLite connections get foreign keys enforced."""
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        engine = create_engine(url, future=True, connect_args=connect_args, echo=settings.DB_ECHO, **kwargs)
        event.listen(engine, "connect", _configure_sqlite_connection)
        return engine
    return create_engine(
        url,
        future=True,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_POOL_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        echo=settings.DB_ECHO,
        **kwargs,
    )


engine = build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


class Base(DeclarativeBase):
    pass


def init_db(bind: Engine | None = None) -> None:
    Base.metadata.create_all(bind=bind or engine)
