"""Creación de sesiones de pago y consulta de estado contra los proveedores"""
from typing import Callable, Dict, Optional
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.models import Order, OrderStatus, Payment, PaymentProvider, PaymentStatus
from shared.exceptions import InvalidStateTransition, OrderNotFound
from shared.utils.clock import utcnow
from services.ticket_purchase.services.pagotic_service import PagoTICService
from services.ticket_purchase.services.payment_gateway import PaymentGateway, PaymentSession
from services.ticket_purchase.services.reconciliation_service import (
    ReconciliationOutcome,
    ReconciliationService,
)
from services.ticket_purchase.services.stripe_service import StripeService

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[], PaymentGateway]

DEFAULT_GATEWAYS: Dict[str, GatewayFactory] = {
    PaymentProvider.STRIPE.value: StripeService,
    PaymentProvider.PAGOTIC.value: PagoTICService,
}


class PaymentService:
    """Orquesta los adaptadores de pago para una orden"""

    def __init__(
        self,
        gateways: Optional[Dict[str, GatewayFactory]] = None,
        reconciliation_service: Optional[ReconciliationService] = None
    ):
        self.gateways = gateways or DEFAULT_GATEWAYS
        self.reconciliation_service = reconciliation_service or ReconciliationService()

    def get_gateway(self, provider: str) -> PaymentGateway:
        """
        Instanciar el adaptador del proveedor

        Raises:
            ValueError: proveedor no soportado o sin credenciales
        """
        factory = self.gateways.get((provider or "").upper())
        if not factory:
            raise ValueError(f"Proveedor de pago no soportado: {provider}")
        return factory()

    async def create_session(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        provider: str,
        payer_email: Optional[str] = None
    ) -> PaymentSession:
        """
        Crear la sesión de pago y registrar el Payment PENDING del intento.

        Raises:
            InvalidStateTransition: si la orden no está PENDING o ya venció
            PaymentProviderRejected / PaymentProviderUnavailable: desde el adaptador
        """
        order = await db.get(Order, order_id, populate_existing=True)
        if not order:
            raise OrderNotFound(str(order_id))
        if order.status != OrderStatus.PENDING.value or order.expires_at <= utcnow():
            current = order.status if order.status != OrderStatus.PENDING.value else OrderStatus.EXPIRED.value
            raise InvalidStateTransition(str(order_id), current, "PAYMENT_SESSION")

        gateway = self.get_gateway(provider)
        session = await gateway.create_payment_session(
            order_id=order.id,
            amount=order.total,
            currency=order.currency,
            payer_email=payer_email,
        )

        try:
            order.payment_provider = gateway.provider
            order.payment_number = session.provider_payment_id
            if session.external_transaction_id:
                order.external_transaction_id = session.external_transaction_id
            order.updated_at = utcnow()

            payment = await self._find_payment(db, order.id, gateway.provider, session.provider_payment_id)
            if payment is None:
                db.add(Payment(
                    id=uuid.uuid4(),
                    order_id=order.id,
                    provider=gateway.provider,
                    status=PaymentStatus.PENDING.value,
                    amount=order.total,
                    currency=order.currency,
                    provider_payment_id=session.provider_payment_id,
                    raw_response=session.raw_response,
                    created_at=utcnow(),
                ))
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(f"Sesión de pago {gateway.provider} {session.provider_payment_id} creada para orden {order_id}")
        return session

    async def verify_payment(self, db: AsyncSession, order_id: uuid.UUID) -> ReconciliationOutcome:
        """
        Consultar el estado del pago en el proveedor y reconciliarlo
        (alternativa al webhook).
        """
        order = await db.get(Order, order_id, populate_existing=True)
        if not order:
            raise OrderNotFound(str(order_id))
        if order.is_terminal:
            return ReconciliationOutcome(action="terminal", order_id=str(order.id), order_status=order.status)
        if not order.payment_provider or not order.payment_number:
            raise ValueError("La orden no tiene un pago iniciado")

        gateway = self.get_gateway(order.payment_provider)
        event = await gateway.fetch_payment(order.payment_number)
        logger.info(
            f"Orden {order_id}: consulta a {gateway.provider} devolvió {event.original_status} "
            f"({event.normalized_status.value})"
        )
        return await self.reconciliation_service.reconcile(db, event)

    @staticmethod
    async def _find_payment(
        db: AsyncSession,
        order_id: uuid.UUID,
        provider: str,
        provider_payment_id: str
    ) -> Optional[Payment]:
        result = await db.execute(
            select(Payment).where(
                Payment.order_id == order_id,
                Payment.provider == provider,
                Payment.provider_payment_id == provider_payment_id,
            )
        )
        return result.scalars().first()
