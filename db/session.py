from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
import structlog

from services.config import settings
from db.models import Base

logger = structlog.get_logger()


def build_engine(url: str) -> AsyncEngine:
    kwargs = {"echo": False, "future": True}
    if url.startswith("postgresql"):
        kwargs.update(pool_size=10, max_overflow=10, pool_pre_ping=True)
    return create_async_engine(url, **kwargs)


engine = build_engine(settings.system_db_url)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False
)


async def create_state_tables(bind: AsyncEngine = None):
    """Create state-store tables that do not exist yet."""
    bind = bind or engine
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("State store tables ensured", tables=len(Base.metadata.tables))

