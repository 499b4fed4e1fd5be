"""Database session factory setup."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool


def create_engine(db_url: str, pool_size: int = 20) -> AsyncEngine:
    """Create the async engine for the configured database.

    PostgreSQL (postgresql+psycopg://...) gets a bounded connection pool.
    SQLite (sqlite+aiosqlite://...) is only used for local runs and tests:
    an in-memory database shares one connection so it stays visible, a file
    database opens a connection per session so SQLite's own locking applies.
    """
    if db_url.startswith("sqlite"):
        in_memory = db_url.rstrip("/").endswith(":") or ":memory:" in db_url
        return create_async_engine(
            db_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool if in_memory else NullPool,
            echo=False,
        )

    return create_async_engine(
        db_url,
        pool_size=pool_size,
        max_overflow=0,  # No overflow beyond pool_size
        pool_pre_ping=True,  # Verify connections before using
        echo=False,  # SQL is not logged; structlog covers application events
    )


def setup_db_session(db_url: str, pool_size: int = 20) -> async_sessionmaker[AsyncSession]:
    """Create async database session factory.

    Args:
        db_url: Database connection URL
        pool_size: Maximum number of connections in the pool (default: 20)

    Returns:
        Async session factory for creating database sessions
    """
    engine = create_engine(db_url, pool_size)

    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent lazy loading issues after commit
    )
