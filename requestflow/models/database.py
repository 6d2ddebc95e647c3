"""
Database configuration and session management for the workflow/request store.

The store is SQLite by default:
- WAL (Write-Ahead Logging) mode so readers don't block the single writer
- Foreign key constraints enforced per connection
- Target tables that requests are applied to live elsewhere (see core.target_data)
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy import event, text
from contextlib import asynccontextmanager
import structlog

from requestflow.config.settings import settings

logger = structlog.get_logger()

# SQLite connection arguments
connect_args = settings.get_connection_args()

engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    future=True,
    connect_args=connect_args,
)
logger.info(
    "database_engine_created",
    type="sqlite",
    url=settings.database_url,
    echo_sql=settings.database_echo
)


# Foreign keys are a per-connection setting in SQLite
@event.listens_for(engine.sync_engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign keys for each connection"""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Base class for models
Base = declarative_base()


async def configure_sqlite(conn):
    """Apply store pragmas on a fresh connection before creating tables."""
    await conn.execute(text("PRAGMA journal_mode=WAL"))
    await conn.execute(text("PRAGMA foreign_keys=ON"))
    await conn.execute(text("PRAGMA cache_size=-10000"))
    await conn.execute(text("PRAGMA synchronous=NORMAL"))


async def init_db(target_engine=None):
    """
    Create all store tables.

    Args:
        target_engine: Engine to initialize (defaults to the configured store)
    """
    target_engine = target_engine or engine
    async with target_engine.begin() as conn:
        await configure_sqlite(conn)
        await conn.run_sync(Base.metadata.create_all)

    logger.info(
        "database_initialized",
        type="sqlite",
        journal_mode="WAL",
        tables=sorted(Base.metadata.tables.keys()),
    )


async def get_db() -> AsyncSession:
    """
    Dependency for getting a database session in FastAPI routes.
    Commits when the route returns, rolls back if it raises.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


class Database:
    """Database helper class for managing connections"""

    def __init__(self, engine_=None, session_factory=None):
        self.engine = engine_ or engine
        self.session_factory = session_factory or AsyncSessionLocal

    async def init(self):
        """Initialize database schema"""
        await init_db(self.engine)

    async def close(self):
        """Close all connections"""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get a database session that commits on success"""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
