from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from delivery_hub.core.config import settings


engine = create_async_engine(settings.database_url, pool_pre_ping=True)
# background operations open their own session per step
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
