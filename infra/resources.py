"""Infrastructure resources: database engine and session factory.

This module is part of the infra layer and must not import from application features.
"""
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker


class DatabaseResource:
    """Database resource for dependency injection."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine = None
        self.session_factory = None

    async def init(self):
        """Initialize database connection."""
        if self.engine is not None:
            return self
        self.engine = create_async_engine(
            self.database_url,
            echo=False,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        return self

    def get_session(self) -> AsyncSession:
        """Get database session (synchronous accessor)."""
        if self.session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self.session_factory()

    async def ping(self) -> None:
        """Verify the database answers a trivial query."""
        if self.engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def shutdown(self):
        """Shutdown database connection."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.session_factory = None
