"""
Database Connection
===================
Async connection using SQLAlchemy (asyncpg in production, aiosqlite locally)
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker

from app.config import load_config


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(database_url, echo=echo, future=True)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
    )


config = load_config()

# Create engine
engine = build_engine(config.database_url, echo=config.database_echo)

# Session factory
async_session_factory = build_session_factory(engine)


async def get_session():
    """Get a database session"""
    async with async_session_factory() as session:
        yield session


async def init_db(bind: AsyncEngine = None):
    """Create all tables (for development only - use Alembic in production)"""
    from app.db.models import Base
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
