from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from feeledger.core.config import settings

Base = declarative_base()


def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """
    Async engine for the ledger database.

    Server databases get a pre-ping and a recycle interval so connections closed by the
    database or the network while idle are replaced instead of failing a ledger unit.
    """
    options = {}
    if make_url(database_url).get_backend_name() != "sqlite":
        options.update(pool_pre_ping=True, pool_recycle=300)
    return create_async_engine(database_url, echo=echo, future=True, **options)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    # Ledger units read rows back after commit to build responses
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


async def create_schema(bind: AsyncEngine) -> None:
    import feeledger.core.models  # noqa: F401  registers every table on Base.metadata

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


engine = build_engine(settings.database_url)
AsyncSessionLocal = build_session_factory(engine)


async def get_db() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session
