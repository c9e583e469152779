from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .config import get_settings

settings = get_settings()

# Slot locks take ranges of rows; READ COMMITTED keeps MySQL from adding gap locks on top.
engine = create_async_engine(
    settings.database_url,
    echo=settings.echo_sql,
    isolation_level=settings.db_isolation_level,
    pool_size=settings.db_pool_size,
    pool_pre_ping=True,
    pool_recycle=3600,
)

async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
