from contextlib import asynccontextmanager

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from paycore.config.config import settings
from paycore.common.exception import GeneralDataException, IntegrityException

import structlog

logger = structlog.get_logger()

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {}
    return {
        "connect_args": {"ssl": "require"} if settings.POSTGRES_SSL else {},
        "pool_pre_ping": True,  # Enable connection health checks
        "pool_size": 5,
        "max_overflow": 5,
        "pool_recycle": 3600,   # Recycle connections after 1 hour
    }


engine = create_async_engine(
    settings.SQLALCHEMY_DATABASE_URI,
    **_engine_kwargs(settings.SQLALCHEMY_DATABASE_URI),
)

SessionLocal = async_sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False  # Rows stay usable after the unit of work commits
)

# Base class for declarative models
Base = declarative_base()


async def get_db():
    db = SessionLocal()
    try:
        yield db
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    finally:
        await db.close()


@asynccontextmanager
async def unit_of_work(db: AsyncSession):
    """
    Explicit transaction boundary for one orchestrator mutation.
    Commits on exit, rolls back and re-raises on any error.
    """
    try:
        yield db
        await db.commit()
    except Exception:
        await db.rollback()
        raise


async def add_row(db: AsyncSession, row, label: str):
    """Insert a row and flush so its id is available inside the unit of work."""
    try:
        db.add(row)
        await db.flush()
        return row
    except IntegrityError as exc:
        raise IntegrityException(
            f"Integrity error when inserting {label}",
            context={"detail": str(exc.orig)},
        ) from exc
    except Exception as exc:  # noqa: BLE001
        raise GeneralDataException(
            f"Unexpected error when inserting {label}",
            context={"detail": str(exc)},
        ) from exc


async def end_read_transaction(db: AsyncSession) -> None:
    """
    Close the transaction autobegun by loading rows so no database
    transaction stays open across a gateway call. Pending writes are left alone.
    """
    if db.in_transaction() and not (db.new or db.dirty or db.deleted):
        await db.commit()


async def init_db():
    # Create tables if they don't exist
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Error creating database tables: {e}")
        raise


# Register the models on Base.metadata
from paycore.data import payment  # noqa: E402,F401
from paycore.data import payment_method  # noqa: E402,F401
from paycore.data import subscription  # noqa: E402,F401
from paycore.data import webhook  # noqa: E402,F401
from paycore.data import post_purchase  # noqa: E402,F401
