"""Ledger de inventario: retención, liberación y venta de butacas y cupos"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.models import Seat, SeatStatus, TicketCategory, CapacityLog
from shared.exceptions import InsufficientInventory, InvariantViolation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InventoryRef:
    """Referencia a una butaca numerada o a una categoría sin numerar"""

    seat_id: Optional[uuid.UUID] = None
    category_id: Optional[uuid.UUID] = None

    def __post_init__(self):
        if (self.seat_id is None) == (self.category_id is None):
            raise ValueError("InventoryRef requiere seat_id o category_id (exactamente uno)")

    @property
    def is_seat(self) -> bool:
        return self.seat_id is not None

    def __str__(self) -> str:
        if self.is_seat:
            return f"seat:{self.seat_id}"
        return f"category:{self.category_id}"


@dataclass(frozen=True)
class HoldResult:
    ref: InventoryRef
    category_id: uuid.UUID
    quantity: int
    unit_price: Decimal


class InventoryService:
    """
    Servicio para manejar el inventario de butacas y categorías.

    Ningún método hace commit: todos corren dentro de la transacción de la
    orden que los invoca. Cada cambio es un UPDATE condicional y se verifica
    por rowcount, así dos transacciones concurrentes nunca retienen la misma
    unidad.
    """

    @staticmethod
    async def hold(
        db: AsyncSession,
        ref: InventoryRef,
        user_id: uuid.UUID,
        order_id: uuid.UUID,
        quantity: int = 1
    ) -> HoldResult:
        """
        Retener unidades AVAILABLE -> HELD para una orden.

        Raises:
            InsufficientInventory: si no hay unidades disponibles en este instante
        """
        if quantity < 1:
            raise ValueError("La cantidad debe ser mayor a 0")

        if ref.is_seat:
            if quantity != 1:
                raise ValueError("Una butaca numerada solo admite cantidad 1")

            stmt = (
                update(Seat)
                .where(Seat.id == ref.seat_id, Seat.status == SeatStatus.AVAILABLE.value)
                .values(status=SeatStatus.HELD.value, user_id=user_id, held_by_order_id=order_id)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount != 1:
                raise InsufficientInventory([str(ref)])

            row = await db.execute(
                select(TicketCategory.id, TicketCategory.price)
                .join(Seat, Seat.category_id == TicketCategory.id)
                .where(Seat.id == ref.seat_id)
            )
            category_id, price = row.one()
            logger.debug(f"Butaca {ref.seat_id} retenida por orden {order_id}")
            return HoldResult(ref=ref, category_id=category_id, quantity=1, unit_price=Decimal(price))

        stmt = (
            update(TicketCategory)
            .where(
                TicketCategory.id == ref.category_id,
                TicketCategory.is_seated.is_(False),
                TicketCategory.capacity_available >= quantity,
            )
            .values(
                capacity_available=TicketCategory.capacity_available - quantity,
                capacity_held=TicketCategory.capacity_held + quantity,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            raise InsufficientInventory([str(ref)])

        db.add(CapacityLog(
            id=uuid.uuid4(),
            category_id=ref.category_id,
            order_id=order_id,
            delta=-quantity,
            reason="hold",
        ))

        price = await db.scalar(select(TicketCategory.price).where(TicketCategory.id == ref.category_id))
        logger.debug(f"Categoría {ref.category_id}: {quantity} unidades retenidas por orden {order_id}")
        return HoldResult(ref=ref, category_id=ref.category_id, quantity=quantity, unit_price=Decimal(price))

    @staticmethod
    async def release(
        db: AsyncSession,
        ref: InventoryRef,
        quantity: int,
        order_id: uuid.UUID,
        reason: str = "release"
    ) -> bool:
        """
        Liberar unidades HELD -> AVAILABLE.

        Idempotente: liberar algo que ya no está retenido por la orden es un no-op.

        Returns:
            True si se liberó algo
        """
        if ref.is_seat:
            stmt = (
                update(Seat)
                .where(
                    Seat.id == ref.seat_id,
                    Seat.status == SeatStatus.HELD.value,
                    Seat.held_by_order_id == order_id,
                )
                .values(status=SeatStatus.AVAILABLE.value, user_id=None, held_by_order_id=None)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount != 1:
                logger.debug(f"Butaca {ref.seat_id} no estaba retenida por orden {order_id}, nada que liberar")
                return False
            return True

        if await InventoryService._already_settled(db, ref.category_id, order_id):
            logger.debug(f"Categoría {ref.category_id} ya liberada/vendida para orden {order_id}")
            return False

        stmt = (
            update(TicketCategory)
            .where(TicketCategory.id == ref.category_id, TicketCategory.capacity_held >= quantity)
            .values(
                capacity_available=TicketCategory.capacity_available + quantity,
                capacity_held=TicketCategory.capacity_held - quantity,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            logger.warning(
                f"Categoría {ref.category_id}: capacity_held menor a {quantity} al liberar orden {order_id}"
            )
            return False

        db.add(CapacityLog(
            id=uuid.uuid4(),
            category_id=ref.category_id,
            order_id=order_id,
            delta=quantity,
            reason=reason,
        ))
        return True

    @staticmethod
    async def commit_sale(
        db: AsyncSession,
        ref: InventoryRef,
        quantity: int,
        order_id: uuid.UUID
    ) -> None:
        """
        Confirmar la venta HELD -> SOLD.

        Raises:
            InvariantViolation: si la unidad no está retenida por esta orden
        """
        if ref.is_seat:
            stmt = (
                update(Seat)
                .where(
                    Seat.id == ref.seat_id,
                    Seat.status == SeatStatus.HELD.value,
                    Seat.held_by_order_id == order_id,
                )
                .values(status=SeatStatus.SOLD.value)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount != 1:
                current = (await db.execute(
                    select(Seat.status, Seat.held_by_order_id).where(Seat.id == ref.seat_id)
                )).one_or_none()
                context = {
                    "order_id": str(order_id),
                    "seat_id": str(ref.seat_id),
                    "seat_status": current[0] if current else None,
                    "held_by_order_id": str(current[1]) if current and current[1] else None,
                }
                logger.critical(f"commit_sale sobre butaca no retenida por la orden: {context}")
                raise InvariantViolation("butaca no retenida por la orden al confirmar venta", context)
            return

        if await InventoryService._already_settled(db, ref.category_id, order_id):
            context = {"order_id": str(order_id), "category_id": str(ref.category_id)}
            logger.critical(f"commit_sale sobre categoría ya liberada/vendida para la orden: {context}")
            raise InvariantViolation("categoría ya liberada o vendida para la orden", context)

        stmt = (
            update(TicketCategory)
            .where(TicketCategory.id == ref.category_id, TicketCategory.capacity_held >= quantity)
            .values(
                capacity_held=TicketCategory.capacity_held - quantity,
                capacity_sold=TicketCategory.capacity_sold + quantity,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            context = {"order_id": str(order_id), "category_id": str(ref.category_id), "quantity": quantity}
            logger.critical(f"commit_sale con capacity_held insuficiente: {context}")
            raise InvariantViolation("capacity_held insuficiente al confirmar venta", context)

        db.add(CapacityLog(
            id=uuid.uuid4(),
            category_id=ref.category_id,
            order_id=order_id,
            delta=0,
            reason="sale",
        ))

    @staticmethod
    async def _already_settled(db: AsyncSession, category_id: uuid.UUID, order_id: uuid.UUID) -> bool:
        """True si la retención de la orden sobre la categoría ya se liberó o vendió"""
        stmt = select(CapacityLog.id).where(
            CapacityLog.category_id == category_id,
            CapacityLog.order_id == order_id,
            CapacityLog.reason != "hold",
        ).limit(1)
        return (await db.scalar(stmt)) is not None
