"""Sesiones de base de datos"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import connection
from shared.database.connection import get_db


@asynccontextmanager
async def background_session() -> AsyncIterator[AsyncSession]:
    """Sesión propia para tareas fuera de un request (Celery, cron)"""
    if connection.async_session_maker is None:
        await connection.init_db()
    async with connection.async_session_maker() as session:
        yield session


__all__ = ["get_db", "background_session"]
