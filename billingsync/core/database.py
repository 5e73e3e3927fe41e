from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from .config import settings
from typing import Optional

# Create async engine (only if database_url is provided)
engine: Optional[object] = None
if settings.database_url:
    engine = create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_pre_ping=True,
        pool_recycle=300,
    )

# Create async session factory (only if engine exists)
AsyncSessionLocal: Optional[async_sessionmaker] = None
if engine:
    AsyncSessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(bind=None):
    """Initialize database tables"""
    bind = bind or engine
    if not bind:
        raise RuntimeError("Database engine not initialized. Set DATABASE_URL in .env")
    async with bind.begin() as conn:
        # Import all models to ensure they are registered
        from billingsync.models import Base
        await conn.run_sync(Base.metadata.create_all)


class UnitOfWork:
    """One database transaction spanning several related writes.

    Functions that must apply more than one write atomically take a
    ``UnitOfWork`` instead of a bare session. Leaving the ``async with``
    block normally commits; an exception rolls everything back.

        async with UnitOfWork(session_factory) as uow:
            await crud.create(uow.session, ...)
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory
        self.session: Optional[AsyncSession] = None
        self._transaction = None

    async def __aenter__(self) -> "UnitOfWork":
        self.session = self._session_factory()
        self._transaction = self.session.begin()
        await self._transaction.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        try:
            await self._transaction.__aexit__(exc_type, exc, tb)
        finally:
            await self.session.close()
        return False
