"""Conexión async a la base de datos (PostgreSQL con asyncpg; SQLite en tests)"""
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from typing import AsyncGenerator, Optional
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

engine = None
async_session_maker = None

ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "postgresql+psycopg://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}


def _to_async_url(database_url: str) -> str:
    """Traducir la URL de configuración al driver async equivalente"""
    if database_url.startswith("postgresql") and "?" in database_url:
        # sslmode y similares no los entiende asyncpg como query string
        database_url = database_url.split("?")[0]

    for prefix, async_prefix in ASYNC_DRIVERS.items():
        if database_url.startswith(prefix):
            return async_prefix + database_url[len(prefix):]
    return database_url


def _safe_url(database_url: str) -> str:
    return database_url.split("@")[-1]


async def init_db(database_url: Optional[str] = None):
    """Crear engine y session factory (una sola vez por proceso)"""
    global engine, async_session_maker

    if engine is not None:
        logger.warning("Engine de base de datos ya inicializado, se omite")
        return

    database_url = _to_async_url(database_url or settings.DATABASE_URL)
    logger.info(f"Conectando a base de datos: {_safe_url(database_url)}")

    pool_config = {}
    if database_url.startswith("postgresql+asyncpg"):
        pool_config = {
            "pool_pre_ping": True,
            "pool_recycle": 300,
            "pool_size": settings.DATABASE_POOL_SIZE,
            "max_overflow": settings.DATABASE_MAX_OVERFLOW,
        }

    engine = create_async_engine(database_url, echo=settings.APP_DEBUG, **pool_config)
    # expire_on_commit=False: las respuestas se arman con la orden ya commiteada
    async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency de FastAPI: una sesión por request"""
    if async_session_maker is None:
        raise RuntimeError("Base de datos no inicializada: falta init_db() en el arranque")

    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def close_db():
    """Liberar el pool de conexiones"""
    global engine, async_session_maker
    if engine is not None:
        await engine.dispose()
        engine = None
        async_session_maker = None
        logger.info("Conexiones a base de datos cerradas")
