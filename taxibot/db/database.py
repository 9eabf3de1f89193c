"""
Database engine, session factory and declarative base
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from taxibot.core.config import settings


def build_engine(**pool_options: Any) -> AsyncEngine:
    return create_async_engine(settings.DATABASE_URL, echo=settings.DEBUG, pool_pre_ping=True, **pool_options)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine()
AsyncSessionLocal = build_session_factory(engine)

Base = declarative_base()


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: uma sessão por request"""
    async with AsyncSessionLocal() as session:
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    FastAPI dependency para trabalho fora do ciclo do request.

    A sessão do request já foi fechada quando a BackgroundTask roda, então o
    processamento da mensagem abre a sua própria sessão a partir desta fábrica.
    """
    return AsyncSessionLocal


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """
    Sessão para tasks Celery.

    Cada task roda num event loop novo e o engine global ficaria preso ao loop
    anterior, então cada task cria e descarta o seu.
    """
    task_engine = build_engine(pool_size=5, max_overflow=10)
    try:
        async with build_session_factory(task_engine)() as session:
            yield session
    finally:
        await task_engine.dispose()
