"""Endpoints para disparadores periódicos externos (cron)"""
from fastapi import APIRouter, Depends, Header, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession
from redis.exceptions import RedisError
from typing import Optional
import hmac
import logging

from app.core.config import settings
from shared.cache.redis_client import DistributedLock
from shared.database.session import get_db
from shared.utils.rate_limiter import limiter, RATE_LIMITS
from services.ticket_purchase.models.purchase import SweepResponse
from services.ticket_purchase.services.expiry_sweeper import ExpirySweeper

logger = logging.getLogger(__name__)

router = APIRouter()

SWEEP_LOCK_KEY = "cron:sweep-expired-orders"


def _check_cron_secret(authorization: Optional[str]):
    if not settings.CRON_SECRET:
        return
    expected = f"Bearer {settings.CRON_SECRET}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Cron secret inválido")


@router.post("/sweep-expired-orders", response_model=SweepResponse)
@limiter.limit(RATE_LIMITS["cron"])
async def sweep_expired_orders(
    request: Request,
    db: AsyncSession = Depends(get_db),
    authorization: Optional[str] = Header(None)
):
    """
    Expirar órdenes PENDING vencidas y liberar su inventario

    Un lock en Redis evita barridos superpuestos; si otro barrido está en curso
    se responde skipped=true.
    """
    _check_cron_secret(authorization)

    lock = DistributedLock(SWEEP_LOCK_KEY, timeout=0, expire=300)
    try:
        acquired = await lock.acquire()
    except (RedisError, OSError) as e:
        # Sin Redis el barrido sigue siendo seguro: cada transición es compare-and-set
        logger.warning(f"Redis no disponible para lock de sweeper, se continúa sin lock: {e}")
        lock = None
        acquired = True

    if not acquired:
        logger.info("Sweeper ya en ejecución, se omite este disparo")
        return SweepResponse(reclaimed=0, skipped=True)

    try:
        reclaimed = await ExpirySweeper().sweep(db)
    finally:
        if lock:
            try:
                await lock.release()
            except (RedisError, OSError) as e:
                logger.warning(f"No se pudo liberar lock de sweeper: {e}")

    return SweepResponse(reclaimed=reclaimed)
