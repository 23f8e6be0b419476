"""Rutas de órdenes: creación, consulta, cancelación y pago"""
from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import Dict
from uuid import UUID
import logging

from shared.database.session import get_db
from shared.database.models import Order, Payment, User
from shared.auth.dependencies import get_current_user
from shared.exceptions import TicketingError
from shared.utils.http_errors import to_http_exception
from shared.utils.rate_limiter import limiter, RATE_LIMITS
from services.ticket_purchase.models.purchase import (
    CreateOrderRequest,
    OrderItemResponse,
    OrderResponse,
    PaymentResponse,
    PaymentSessionRequest,
    PaymentSessionResponse,
    ReconciliationResponse,
    TicketResponse,
)
from services.ticket_purchase.services.inventory_service import InventoryRef
from services.ticket_purchase.services.order_service import OrderLine, OrderService
from services.ticket_purchase.services.payment_service import PaymentService
from services.ticket_purchase.services.ticket_issuance_service import TicketIssuanceService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_payment_service() -> PaymentService:
    return PaymentService()


def _parse_user_id(current_user: Dict) -> UUID:
    try:
        return UUID(str(current_user["user_id"]))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token inválido: user_id no es un UUID"
        )


async def _get_owned_order(db: AsyncSession, order_id: UUID, current_user: Dict) -> Order:
    """Obtener orden verificando que pertenezca al usuario (o que sea admin)"""
    try:
        order = await OrderService().get_order(db, order_id)
    except TicketingError as e:
        raise to_http_exception(e)

    if current_user.get("role") != "admin" and str(order.user_id) != str(current_user.get("user_id")):
        # Mismo 404 que una orden inexistente
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "order_not_found", "detail": f"Orden {order_id} no encontrada"}
        )
    return order


async def _build_order_response(db: AsyncSession, order: Order) -> OrderResponse:
    items = await OrderService().get_items(db, order.id)
    payments = (await db.execute(
        select(Payment).where(Payment.order_id == order.id).order_by(Payment.created_at)
    )).scalars().all()
    tickets = await TicketIssuanceService.get_tickets_for_order(db, order.id)

    return OrderResponse(
        order_id=str(order.id),
        status=order.status,
        total=order.total,
        currency=order.currency,
        expires_at=order.expires_at,
        created_at=order.created_at,
        paid_at=order.paid_at,
        payment_provider=order.payment_provider,
        payment_number=order.payment_number,
        items=[
            OrderItemResponse(
                id=str(item.id),
                category_id=str(item.category_id),
                seat_id=str(item.seat_id) if item.seat_id else None,
                quantity=item.quantity,
                unit_price=item.unit_price,
                subtotal=item.subtotal,
            )
            for item in items
        ],
        payments=[
            PaymentResponse(
                id=str(payment.id),
                provider=payment.provider,
                status=payment.status,
                amount=payment.amount,
                provider_payment_id=payment.provider_payment_id,
                created_at=payment.created_at,
            )
            for payment in payments
        ],
        tickets=[
            TicketResponse(
                id=str(ticket.id),
                order_item_id=str(ticket.order_item_id),
                qr_id=ticket.qr_id,
                qr_code_url=ticket.qr_code_url,
                pdf_url=ticket.pdf_url,
                wallet_pass_url=ticket.wallet_pass_url,
                used_at=ticket.used_at,
            )
            for ticket in tickets
        ],
    )


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(RATE_LIMITS["purchase"])  # 10 intentos por minuto
async def create_order(
    request: Request,  # Necesario para rate limiter
    order_request: CreateOrderRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_user)
):
    """
    Crear orden PENDING reteniendo butacas / cupos de categoría

    Si algún ítem no tiene disponibilidad no se retiene nada y se responde
    409 con la lista de referencias no disponibles.
    """
    user_id = _parse_user_id(current_user)
    if order_request.user_id and order_request.user_id != user_id:
        if current_user.get("role") != "admin":
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="No puedes crear órdenes para otros usuarios"
            )
        user_id = order_request.user_id

    if not await db.get(User, user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Usuario no encontrado")

    lines = [
        OrderLine(ref=InventoryRef(seat_id=item.seat_id, category_id=item.category_id), quantity=item.quantity)
        for item in order_request.items
    ]

    try:
        order = await OrderService().create(db, user_id, lines, order_request.hold_minutes)
    except TicketingError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return await _build_order_response(db, order)


@router.get("/{order_id}", response_model=OrderResponse)
@limiter.limit(RATE_LIMITS["public"])
async def get_order(
    request: Request,
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_user)
):
    """Estado de la orden con sus ítems, pagos y tickets"""
    order = await _get_owned_order(db, order_id, current_user)
    return await _build_order_response(db, order)


@router.post("/{order_id}/cancel", response_model=OrderResponse)
@limiter.limit(RATE_LIMITS["purchase"])
async def cancel_order(
    request: Request,
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_user)
):
    """Cancelar una orden PENDING y liberar su inventario"""
    await _get_owned_order(db, order_id, current_user)
    try:
        result = await OrderService().transition_to_cancelled(db, order_id)
    except TicketingError as e:
        raise to_http_exception(e)

    logger.info(f"Orden {order_id} cancelada por {current_user.get('user_id')} (cambio: {result.changed})")
    return await _build_order_response(db, result.order)


@router.post("/{order_id}/payment-session", response_model=PaymentSessionResponse)
@limiter.limit(RATE_LIMITS["purchase"])
async def create_payment_session(
    request: Request,
    order_id: UUID,
    session_request: PaymentSessionRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """
    Iniciar el pago de la orden con Stripe (client_secret) o PagoTIC (redirect_url)
    """
    await _get_owned_order(db, order_id, current_user)
    try:
        session = await payment_service.create_session(
            db,
            order_id,
            session_request.provider,
            payer_email=session_request.payer_email or current_user.get("email"),
        )
    except TicketingError as e:
        raise to_http_exception(e)
    except ValueError as e:
        logger.error(f"Proveedor {session_request.provider} no disponible: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return PaymentSessionResponse(
        order_id=str(order_id),
        provider=session.provider,
        provider_payment_id=session.provider_payment_id,
        redirect_url=session.redirect_url,
        client_secret=session.client_secret,
    )


@router.post("/{order_id}/verify-payment", response_model=ReconciliationResponse)
@limiter.limit(RATE_LIMITS["purchase"])
async def verify_payment(
    request: Request,
    order_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """
    Consultar el pago en el proveedor y reconciliar la orden.
    Útil cuando el webhook no llega.
    """
    await _get_owned_order(db, order_id, current_user)
    try:
        outcome = await payment_service.verify_payment(db, order_id)
    except TicketingError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return ReconciliationResponse(**outcome.to_dict())
