from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from asset_pipeline.core.config import settings

connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

engine = create_async_engine(settings.database_url, future=True, echo=False, connect_args=connect_args)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, autoflush=False, class_=AsyncSession)


async def init_models() -> None:
    """Create tables for the asset model when running without migrations."""
    from asset_pipeline.db.base import Base
    import asset_pipeline.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
