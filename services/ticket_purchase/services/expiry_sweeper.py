"""Barrido de órdenes PENDING vencidas"""
from datetime import datetime
from typing import Optional
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.models import Order, OrderStatus
from shared.exceptions import InvalidStateTransition, InvariantViolation
from shared.utils.clock import utcnow
from services.ticket_purchase.services.order_service import OrderService

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Expira las órdenes cuyo hold venció y devuelve su inventario"""

    def __init__(self, order_service: Optional[OrderService] = None):
        self.order_service = order_service or OrderService()

    async def sweep(self, db: AsyncSession, now: Optional[datetime] = None) -> int:
        """
        Pasar a EXPIRED toda orden PENDING con expires_at < now.

        Cada orden se procesa en su propia transacción con la misma transición
        que usa el resto del sistema. Si un webhook la aprobó antes, se omite.

        Returns:
            Cantidad de órdenes expiradas en este barrido
        """
        now = now or utcnow()
        result = await db.execute(
            select(Order.id)
            .where(Order.status == OrderStatus.PENDING.value, Order.expires_at < now)
            .order_by(Order.expires_at)
        )
        order_ids = list(result.scalars().all())
        if not order_ids:
            return 0

        logger.info(f"Sweeper: {len(order_ids)} órdenes vencidas encontradas")
        reclaimed = 0
        for order_id in order_ids:
            try:
                transition = await self.order_service.transition_to_expired(db, order_id)
            except InvalidStateTransition as e:
                logger.info(f"Sweeper: orden {order_id} ya no está pendiente ({e.current}), se omite")
                continue
            except InvariantViolation as e:
                logger.critical(f"Sweeper: invariante violada al expirar orden {order_id}: {e.detail} {e.context}")
                continue

            if transition.changed:
                reclaimed += 1

        logger.info(f"Sweeper: {reclaimed} órdenes expiradas")
        return reclaimed
