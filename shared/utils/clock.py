"""Reloj del sistema (UTC naive, como se persiste en la base de datos)"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Hora actual en UTC sin tzinfo"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
