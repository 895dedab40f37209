from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from agripay.config import settings


def make_engine(url: str = None, **kwargs) -> AsyncEngine:
    url = str(url or settings.DATABASE_URL)
    return create_async_engine(url, echo=settings.DEBUG, **kwargs)


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


engine = make_engine()

# payment intents are read back after commit, so keep attributes loaded
async_session = make_session_factory(engine)
