import logging

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from durak.settings import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.database_url


data_engine = create_async_engine(DATABASE_URL, future=True)
AsyncSessionMaker = async_sessionmaker(data_engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def init_db(reset: bool = False) -> None:
    import durak.models  # noqa: F401

    async with data_engine.begin() as conn:
        if reset:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database ready (reset=%s)", reset)
