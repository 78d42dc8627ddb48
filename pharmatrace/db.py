from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

Base = declarative_base()


def build_engine(url, echo=False) -> AsyncEngine:
    return create_async_engine(
        url,
        echo=echo,
        future=True,
        pool_pre_ping=True,
        poolclass=NullPool,
    )


def build_session_maker(engine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine):
    # Import models so they are registered on Base.metadata
    from pharmatrace.mirror import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine):
    await engine.dispose()
