"""Agregado de orden: creación con retención de inventario y máquina de estados"""
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence
import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from shared.database.models import Order, OrderItem, OrderStatus
from shared.exceptions import InsufficientInventory, InvalidStateTransition, OrderNotFound
from shared.utils.clock import utcnow
from services.ticket_purchase.services.inventory_service import InventoryRef, InventoryService

logger = logging.getLogger(__name__)

# Estados terminales que liberan inventario. Cancelar una orden expirada (o al
# revés) es un reintento equivalente: el inventario ya volvió al ledger.
RELEASED_STATUSES = frozenset({OrderStatus.CANCELLED.value, OrderStatus.EXPIRED.value})


@dataclass(frozen=True)
class OrderLine:
    """Línea solicitada al crear una orden"""

    ref: InventoryRef
    quantity: int = 1


@dataclass(frozen=True)
class PaymentContext:
    provider: str
    provider_payment_id: Optional[str] = None


@dataclass
class TransitionResult:
    order: Order
    changed: bool
    previous_status: str


class OrderService:
    """Servicio del agregado Order"""

    def __init__(self, inventory_service: Optional[InventoryService] = None):
        self.inventory_service = inventory_service or InventoryService()

    async def create(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        lines: Sequence[OrderLine],
        hold_duration_minutes: Optional[int] = None
    ) -> Order:
        """
        Crear orden PENDING reteniendo el inventario de cada línea.

        Todo ocurre en una transacción: si alguna retención falla no sobrevive
        ninguna y se informa qué referencias no estaban disponibles.

        Raises:
            InsufficientInventory: con la lista de referencias no disponibles
            ValueError: si las líneas son inválidas
        """
        lines = self._normalize_lines(lines)
        hold_minutes = settings.ORDER_HOLD_MINUTES if hold_duration_minutes is None else hold_duration_minutes
        now = utcnow()

        order = Order(
            id=uuid.uuid4(),
            user_id=user_id,
            status=OrderStatus.PENDING.value,
            total=Decimal("0.00"),
            currency=settings.CURRENCY,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(minutes=hold_minutes),
        )

        try:
            db.add(order)
            await db.flush()

            holds = []
            unavailable: List[str] = []
            for line in lines:
                try:
                    holds.append(
                        await self.inventory_service.hold(db, line.ref, user_id, order.id, line.quantity)
                    )
                except InsufficientInventory as e:
                    unavailable.extend(e.unavailable)

            if unavailable:
                await db.rollback()
                logger.info(f"Orden rechazada para usuario {user_id}: sin inventario {unavailable}")
                raise InsufficientInventory(unavailable)

            total = Decimal("0.00")
            for hold in holds:
                subtotal = (hold.unit_price * hold.quantity).quantize(Decimal("0.01"))
                db.add(OrderItem(
                    id=uuid.uuid4(),
                    order_id=order.id,
                    category_id=hold.category_id,
                    seat_id=hold.ref.seat_id,
                    quantity=hold.quantity,
                    unit_price=hold.unit_price,
                    subtotal=subtotal,
                    created_at=now,
                ))
                total += subtotal

            order.total = total
            await db.commit()
        except InsufficientInventory:
            raise
        except Exception:
            await db.rollback()
            raise

        logger.info(
            f"Orden {order.id} creada: {len(lines)} líneas, total {order.total} {order.currency}, "
            f"expira {order.expires_at.isoformat()}"
        )
        return order

    async def get_order(self, db: AsyncSession, order_id: uuid.UUID) -> Order:
        order = await db.get(Order, order_id, populate_existing=True)
        if not order:
            raise OrderNotFound(str(order_id))
        return order

    async def get_items(self, db: AsyncSession, order_id: uuid.UUID) -> List[OrderItem]:
        result = await db.execute(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.created_at, OrderItem.id)
        )
        return list(result.scalars().all())

    async def transition_to_paid(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        payment_context: Optional[PaymentContext] = None,
        commit: bool = True
    ) -> TransitionResult:
        """
        PENDING -> PAID. Confirma la venta de todo el inventario retenido.

        Si la orden ya está PAID devuelve changed=False sin efectos.
        """
        extra: Dict = {}
        if payment_context:
            extra["payment_provider"] = payment_context.provider
        return await self._transition(db, order_id, OrderStatus.PAID.value, extra, commit)

    async def transition_to_cancelled(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        commit: bool = True
    ) -> TransitionResult:
        """PENDING -> CANCELLED. Libera el inventario retenido."""
        return await self._transition(db, order_id, OrderStatus.CANCELLED.value, {}, commit)

    async def transition_to_expired(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        commit: bool = True
    ) -> TransitionResult:
        """PENDING -> EXPIRED. Libera el inventario retenido."""
        return await self._transition(db, order_id, OrderStatus.EXPIRED.value, {}, commit)

    async def _transition(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        target: str,
        extra_values: Dict,
        commit: bool
    ) -> TransitionResult:
        order = await self.get_order(db, order_id)
        previous = order.status

        if order.status != OrderStatus.PENDING.value:
            self._ensure_idempotent_retry(order, target)
            return TransitionResult(order=order, changed=False, previous_status=previous)

        now = utcnow()
        values = {"status": target, "updated_at": now, **extra_values}
        if target == OrderStatus.PAID.value:
            values["paid_at"] = now
        else:
            values["closed_at"] = now

        # Compare-and-set: solo una transacción puede sacar la orden de PENDING
        result = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PENDING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.refresh(order)
            logger.info(f"Orden {order_id}: otra transacción la pasó a {order.status} antes que {target}")
            self._ensure_idempotent_retry(order, target)
            return TransitionResult(order=order, changed=False, previous_status=previous)

        try:
            for item in await self.get_items(db, order_id):
                ref = self.ref_for_item(item)
                if target == OrderStatus.PAID.value:
                    await self.inventory_service.commit_sale(db, ref, item.quantity, order_id)
                else:
                    await self.inventory_service.release(db, ref, item.quantity, order_id, reason=target.lower())

            if commit:
                await db.commit()
            else:
                await db.flush()
        except Exception:
            if commit:
                await db.rollback()
            raise

        await db.refresh(order)
        logger.info(f"Orden {order_id}: {previous} -> {target}")
        return TransitionResult(order=order, changed=True, previous_status=previous)

    @staticmethod
    def _ensure_idempotent_retry(order: Order, target: str) -> None:
        if order.status == target:
            return
        if order.status in RELEASED_STATUSES and target in RELEASED_STATUSES:
            return
        logger.warning(f"Transición rechazada para orden {order.id}: {order.status} -> {target}")
        raise InvalidStateTransition(str(order.id), order.status, target)

    @staticmethod
    def ref_for_item(item: OrderItem) -> InventoryRef:
        if item.seat_id:
            return InventoryRef(seat_id=item.seat_id)
        return InventoryRef(category_id=item.category_id)

    @staticmethod
    def _normalize_lines(lines: Sequence[OrderLine]) -> List[OrderLine]:
        """Validar líneas y agrupar cantidades por categoría"""
        if not lines:
            raise ValueError("La orden debe tener al menos un ítem")

        seats: Dict[uuid.UUID, OrderLine] = {}
        categories: Dict[uuid.UUID, int] = {}
        for line in lines:
            if line.quantity < 1:
                raise ValueError("La cantidad de cada ítem debe ser mayor a 0")
            if line.ref.is_seat:
                if line.quantity != 1:
                    raise ValueError("Una butaca numerada solo admite cantidad 1")
                if line.ref.seat_id in seats:
                    raise ValueError(f"Butaca {line.ref.seat_id} repetida en la orden")
                seats[line.ref.seat_id] = line
            else:
                categories[line.ref.category_id] = categories.get(line.ref.category_id, 0) + line.quantity

        normalized = list(seats.values()) + [
            OrderLine(ref=InventoryRef(category_id=category_id), quantity=quantity)
            for category_id, quantity in categories.items()
        ]

        total_quantity = sum(line.quantity for line in normalized)
        if total_quantity > settings.MAX_TICKETS_PER_ORDER:
            raise ValueError(
                f"Máximo {settings.MAX_TICKETS_PER_ORDER} tickets por orden (solicitados: {total_quantity})"
            )
        return normalized
