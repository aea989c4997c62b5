import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from commcal.config import settings

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.database_url,
    echo=False,
    connect_args={"timeout": 30},  # wait up to 30s for SQLite write lock before failing
)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Lookup indexes used by import deduplication
    async with engine.begin() as conn:
        await conn.execute(text(
            "CREATE INDEX IF NOT EXISTS idx_event_title_start "
            "ON events (title, start_time)"
        ))
        await conn.execute(text(
            "CREATE INDEX IF NOT EXISTS idx_event_start "
            "ON events (start_time)"
        ))
        await conn.execute(text(
            "CREATE INDEX IF NOT EXISTS idx_venue_title "
            "ON venues (title)"
        ))
    logger.info("Database initialised")


async def get_session() -> AsyncSession:
    async with async_session() as session:
        yield session
