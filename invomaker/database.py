from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    if not database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo, future=True, pool_pre_ping=True)

    engine = create_async_engine(
        database_url,
        echo=echo,
        future=True,
        poolclass=NullPool,
        connect_args={"check_same_thread": False},
    )

    # SQLite n applique les cles etrangeres (et donc ON DELETE CASCADE) que sur demande
    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
