from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

# Import ALL models to ensure they're registered with SQLModel.metadata
from pixelqueue.modules.jobs.models import Job, DeadLetterRecord, AccountViolation  # noqa: F401
from pixelqueue.modules.ledger.models import CreditAccount, LedgerEntry  # noqa: F401


def create_engine_and_sessionmaker(database_url: str, echo: bool = False):
    """Build an async engine and its session factory.

    Handles are returned to the caller instead of living at module level so
    each worker process (and each test) owns its own connections.
    """
    engine = create_async_engine(database_url, echo=echo, future=True)
    session_maker = sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    return engine, session_maker


async def create_db_and_tables(engine: AsyncEngine):
    """Create all tables if they don't exist."""
    async with engine.begin() as conn:
        await conn.run_sync(lambda sync_conn: SQLModel.metadata.create_all(sync_conn, checkfirst=True))
