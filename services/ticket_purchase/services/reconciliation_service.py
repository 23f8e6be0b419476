"""Motor de reconciliación: aplica eventos de pago normalizados sobre las órdenes"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Optional
import logging
import re
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.models import Order, OrderStatus, Payment, PaymentStatus
from shared.exceptions import InvalidStateTransition, InvariantViolation, TicketAssetError
from shared.utils.clock import utcnow
from services.ticket_purchase.services.order_service import OrderService, PaymentContext
from services.ticket_purchase.services.payment_gateway import NormalizedStatus, PaymentEvent
from services.ticket_purchase.services.ticket_issuance_service import TicketIssuanceService

logger = logging.getLogger(__name__)

# order-<uuid>-<epochMillis>
EXTERNAL_REF_PATTERN = re.compile(r"^order-([0-9a-fA-F-]{36})(?:-\d+)?$")

# Diferencia máxima aceptada entre el monto informado y el total de la orden
AMOUNT_TOLERANCE = Decimal("0.01")

PAYMENT_STATUS_BY_EVENT = {
    NormalizedStatus.APPROVED: PaymentStatus.APPROVED.value,
    NormalizedStatus.CANCELLED: PaymentStatus.CANCELLED.value,
    NormalizedStatus.PENDING: PaymentStatus.PENDING.value,
}


@dataclass
class ReconciliationOutcome:
    """Resultado de procesar un evento. Siempre se reconoce al proveedor."""

    action: str  # transitioned, noop, ignored, not_found, terminal, error
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    tickets_issued: int = 0
    acknowledged: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "received": self.acknowledged,
            "action": self.action,
            "order_id": self.order_id,
            "order_status": self.order_status,
            "tickets_issued": self.tickets_issued,
        }


def _schedule_issuance_retry(order_id: uuid.UUID):
    from services.ticket_purchase.tasks.issuance_tasks import issue_order_tickets
    issue_order_tickets.delay(str(order_id))


def _schedule_asset_retry(error: TicketAssetError):
    from services.ticket_purchase.tasks.issuance_tasks import regenerate_ticket_assets
    regenerate_ticket_assets.delay(error.ticket_id)


class ReconciliationService:
    """Traduce un PaymentEvent en como mucho una transición de la orden"""

    def __init__(
        self,
        order_service: Optional[OrderService] = None,
        issuance_service: Optional[TicketIssuanceService] = None,
        issuance_retry: Optional[Callable[[uuid.UUID], None]] = None,
        asset_retry: Optional[Callable[[TicketAssetError], None]] = None
    ):
        self.order_service = order_service or OrderService()
        self.issuance_service = issuance_service or TicketIssuanceService()
        self.issuance_retry = issuance_retry or _schedule_issuance_retry
        self.asset_retry = asset_retry or _schedule_asset_retry

    async def reconcile(self, db: AsyncSession, event: PaymentEvent) -> ReconciliationOutcome:
        """
        Procesar un evento de pago.

        Nunca lanza: los errores internos se loguean y el evento se reconoce
        igual para no provocar reintentos en cascada del proveedor.
        """
        try:
            return await self._reconcile(db, event)
        except InvariantViolation as e:
            await db.rollback()
            logger.critical(
                f"Invariante violada procesando pago {event.provider}/{event.provider_payment_id}: "
                f"{e.detail} - contexto: {e.context}",
                exc_info=True
            )
            return ReconciliationOutcome(action="error")
        except Exception as e:
            await db.rollback()
            logger.error(
                f"Error procesando pago {event.provider}/{event.provider_payment_id} "
                f"(ref={event.external_order_ref}): {e}",
                exc_info=True
            )
            return ReconciliationOutcome(action="error")

    async def _reconcile(self, db: AsyncSession, event: PaymentEvent) -> ReconciliationOutcome:
        order = await self.find_order(db, event)
        if not order:
            logger.warning(
                f"{event.provider}: orden no encontrada para pago {event.provider_payment_id} "
                f"(ref={event.external_order_ref}), se ignora"
            )
            return ReconciliationOutcome(action="not_found")

        order_id = str(order.id)
        if order.is_terminal:
            logger.info(f"Orden {order_id} ya está en {order.status}, evento {event.normalized_status.value} ignorado")
            return ReconciliationOutcome(action="terminal", order_id=order_id, order_status=order.status)

        if event.normalized_status == NormalizedStatus.UNKNOWN:
            logger.warning(
                f"Orden {order_id}: estado de pago no reconocido '{event.original_status}' "
                f"({event.provider}), no se aplica ninguna transición"
            )
            return ReconciliationOutcome(action="ignored", order_id=order_id, order_status=order.status)

        target = self._target_status(order, event.normalized_status)

        await self._record_payment(db, order, event)
        await db.flush()

        if target is None:
            await db.commit()
            logger.info(f"Orden {order_id}: pago {event.provider_payment_id} sigue pendiente")
            return ReconciliationOutcome(action="noop", order_id=order_id, order_status=order.status)

        try:
            if target == OrderStatus.PAID.value:
                context = PaymentContext(provider=event.provider, provider_payment_id=event.provider_payment_id)
                result = await self.order_service.transition_to_paid(db, order.id, context, commit=False)
            elif target == OrderStatus.CANCELLED.value:
                result = await self.order_service.transition_to_cancelled(db, order.id, commit=False)
            else:
                result = await self.order_service.transition_to_expired(db, order.id, commit=False)
            await db.commit()
        except InvalidStateTransition as e:
            # Otra transacción (sweeper, cancelación) ganó la carrera
            await db.rollback()
            logger.warning(f"Orden {order_id}: {e.message}. Evento reconocido sin cambios")
            return ReconciliationOutcome(action="terminal", order_id=order_id, order_status=e.current)

        outcome = ReconciliationOutcome(
            action="transitioned" if result.changed else "noop",
            order_id=order_id,
            order_status=result.order.status,
        )

        if result.changed and target == OrderStatus.PAID.value:
            outcome.tickets_issued = await self._issue_tickets(db, order.id)

        return outcome

    async def _issue_tickets(self, db: AsyncSession, order_id: uuid.UUID) -> int:
        """El pago ya está confirmado: una falla acá se reintenta en background"""
        try:
            tickets = await self.issuance_service.issue_for_order(db, order_id, on_asset_error=self._queue_asset_retry)
            return len(tickets)
        except Exception as e:
            await db.rollback()
            logger.error(f"Orden {order_id} pagada pero la emisión de tickets falló: {e}", exc_info=True)
            try:
                self.issuance_retry(order_id)
            except Exception as queue_error:
                logger.error(f"No se pudo encolar la emisión de la orden {order_id}: {queue_error}")
            return 0

    def _queue_asset_retry(self, error: TicketAssetError):
        try:
            self.asset_retry(error)
        except Exception as queue_error:
            logger.error(f"No se pudo encolar la regeneración de assets del ticket {error.ticket_id}: {queue_error}")

    @staticmethod
    def _target_status(order: Order, status: NormalizedStatus) -> Optional[str]:
        if status == NormalizedStatus.APPROVED:
            return OrderStatus.PAID.value
        if status == NormalizedStatus.CANCELLED:
            return OrderStatus.CANCELLED.value
        if status == NormalizedStatus.PENDING and order.expires_at < utcnow():
            return OrderStatus.EXPIRED.value
        return None

    async def _record_payment(self, db: AsyncSession, order: Order, event: PaymentEvent) -> Payment:
        """Actualizar (o crear) el Payment del intento y guardar el payload crudo"""
        payment = None
        if event.provider_payment_id:
            result = await db.execute(
                select(Payment).where(
                    Payment.order_id == order.id,
                    Payment.provider == event.provider,
                    Payment.provider_payment_id == event.provider_payment_id,
                )
            )
            payment = result.scalars().first()

        if payment is None:
            result = await db.execute(
                select(Payment)
                .where(
                    Payment.order_id == order.id,
                    Payment.provider == event.provider,
                    Payment.status == PaymentStatus.PENDING.value,
                )
                .order_by(Payment.created_at.desc())
            )
            payment = result.scalars().first()

        now = utcnow()
        if payment is None:
            payment = Payment(
                id=uuid.uuid4(),
                order_id=order.id,
                provider=event.provider,
                status=PaymentStatus.PENDING.value,
                amount=order.total,
                currency=order.currency,
                created_at=now,
            )
            db.add(payment)

        # Monótono: un pago resuelto no vuelve a PENDING ni cambia de resultado
        new_status = PAYMENT_STATUS_BY_EVENT[event.normalized_status]
        if payment.status == PaymentStatus.PENDING.value:
            payment.status = new_status
        elif payment.status != new_status:
            logger.warning(
                f"Pago {payment.id} ya está {payment.status}, se ignora el estado {new_status} del proveedor"
            )

        if event.amount is not None:
            if abs(Decimal(event.amount) - Decimal(order.total)) > AMOUNT_TOLERANCE:
                logger.warning(
                    f"Orden {order.id}: {event.provider} informa monto {event.amount} "
                    f"pero el total de la orden es {order.total} (pago {event.provider_payment_id})"
                )
            payment.amount = event.amount

        if event.provider_payment_id:
            payment.provider_payment_id = event.provider_payment_id
        payment.raw_response = event.raw_payload
        payment.updated_at = now

        if not order.payment_provider:
            order.payment_provider = event.provider
        if event.provider_payment_id and not order.payment_number:
            order.payment_number = event.provider_payment_id
        return payment

    @staticmethod
    async def find_order(db: AsyncSession, event: PaymentEvent) -> Optional[Order]:
        """
        Buscar la orden por payment_number, external_transaction_id o por el
        id embebido en la referencia (`<uuid>` u `order-<uuid>-<ts>`).
        """
        if event.provider_payment_id:
            result = await db.execute(select(Order).where(Order.payment_number == event.provider_payment_id))
            order = result.scalars().first()
            if order:
                await db.refresh(order)
                return order

        ref = (event.external_order_ref or "").strip()
        if not ref:
            return None

        result = await db.execute(select(Order).where(Order.external_transaction_id == ref))
        order = result.scalars().first()
        if order:
            await db.refresh(order)
            return order

        match = EXTERNAL_REF_PATTERN.match(ref)
        candidate = match.group(1) if match else ref
        try:
            order_id = uuid.UUID(candidate)
        except ValueError:
            return None
        return await db.get(Order, order_id, populate_existing=True)
