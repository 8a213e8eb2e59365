# database.py - Async database setup for the single-file task store
import os
import logging
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from exceptions import NameConflict, StorageFailure

logger = logging.getLogger("tasklane.database")

# Database configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./data/tasklane.db")


def _engine_options(url: str) -> dict:
    options = {"echo": os.getenv("SQL_ECHO", "false").lower() == "true", "future": True}
    if not url.startswith("sqlite"):
        options.update(pool_size=20, max_overflow=0, pool_pre_ping=True, pool_recycle=3600)
    return options


def enable_sqlite_foreign_keys(async_engine) -> None:
    """SQLite ships with foreign key enforcement off; cascades rely on it."""
    if async_engine.url.get_backend_name() != "sqlite":
        return

    @event.listens_for(async_engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = create_async_engine(DATABASE_URL, **_engine_options(DATABASE_URL))
enable_sqlite_foreign_keys(engine)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
    autocommit=False,
)


async def get_db_session():
    """Dependency for getting database session (FastAPI Depends)"""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def _begin_write(db: AsyncSession) -> None:
    """Take SQLite's write lock before the block's first read.

    pysqlite only emits BEGIN ahead of DML, so reads that decide a write
    would otherwise run outside the transaction. Other backends keep their
    default isolation.
    """
    conn = await db.connection()
    if conn.dialect.name != "sqlite":
        return
    raw = await conn.get_raw_connection()
    if not raw.driver_connection.in_transaction:
        await conn.exec_driver_sql("BEGIN IMMEDIATE")


@asynccontextmanager
async def atomic(db: AsyncSession):
    """Run a multi-statement mutation as one transaction on ``db``.

    On SQLite the transaction starts with BEGIN IMMEDIATE, so concurrent
    writers queue behind each other and every check inside the block sees
    committed state. Commits when the block exits cleanly; any exception
    rolls back every statement issued inside the block. Storage errors
    surface as NameConflict (unique violations) or StorageFailure.
    """
    try:
        await _begin_write(db)
        yield db
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        logger.warning(f"Integrity violation, transaction rolled back: {exc.orig}")
        raise NameConflict() from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error(f"Storage failure, transaction rolled back: {exc}")
        raise StorageFailure() from exc
    except BaseException:
        await db.rollback()
        raise


def _ensure_sqlite_directory(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite" or not parsed.database or parsed.database == ":memory:":
        return
    directory = os.path.dirname(os.path.abspath(parsed.database))
    os.makedirs(directory, exist_ok=True)


async def init_db():
    """Initialize database and create tables"""
    from models import Base

    _ensure_sqlite_directory(DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database initialized")


async def close_db():
    """Close database connection pool"""
    await engine.dispose()


@asynccontextmanager
async def get_db_context():
    """Context manager for database operations outside of FastAPI request cycle"""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
