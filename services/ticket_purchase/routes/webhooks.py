"""Webhooks de proveedores de pago"""
from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession
import json
import logging

from shared.database.session import get_db
from shared.exceptions import WebhookSignatureError
from shared.utils.rate_limiter import limiter, RATE_LIMITS
from services.ticket_purchase.models.purchase import ReconciliationResponse
from services.ticket_purchase.services.pagotic_service import PagoTICService
from services.ticket_purchase.services.reconciliation_service import ReconciliationService
from services.ticket_purchase.services.stripe_service import StripeService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_reconciliation_service() -> ReconciliationService:
    return ReconciliationService()


def get_stripe_service() -> StripeService:
    try:
        return StripeService()
    except ValueError as e:
        logger.error(f"Webhook Stripe recibido sin configuración: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe no configurado")


@router.post("/stripe", response_model=ReconciliationResponse)
@limiter.limit(RATE_LIMITS["webhook"])  # 100 por minuto para webhooks de payment providers
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe_service),
    reconciliation: ReconciliationService = Depends(get_reconciliation_service)
):
    """
    Webhook de Stripe (payment_intent.*)

    La firma Stripe-Signature se verifica sobre el body crudo antes de parsearlo.
    Firma inválida -> 400; cualquier otro resultado -> 200.
    """
    payload = await request.body()
    try:
        stripe_service.verify_webhook(payload, request.headers.get("stripe-signature"))
    except WebhookSignatureError as e:
        logger.warning(f"Webhook Stripe rechazado: {e.message}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_dict())

    try:
        data = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payload JSON inválido")
    if not isinstance(data, dict):
        logger.warning(f"Webhook Stripe con payload inesperado: {type(data).__name__}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payload JSON inválido")

    event = stripe_service.normalize_webhook(data)
    logger.info(
        f"Webhook Stripe {data.get('type')} - intent {event.provider_payment_id}, "
        f"orden {event.external_order_ref}"
    )
    outcome = await reconciliation.reconcile(db, event)
    return ReconciliationResponse(**outcome.to_dict())


@router.post("/pagotic", response_model=ReconciliationResponse)
@limiter.limit(RATE_LIMITS["webhook"])
async def pagotic_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    reconciliation: ReconciliationService = Depends(get_reconciliation_service)
):
    """
    Webhook de PagoTIC

    Acepta JSON o form-urlencoded. Siempre responde 200: PagoTIC no reintenta
    de forma confiable y los errores internos se resuelven por polling o sweeper.
    """
    try:
        if not PagoTICService.verify_webhook(request.headers.get("x-pagotic-signature")):
            logger.warning("Webhook PagoTIC con firma inválida, se ignora")
            return ReconciliationResponse(action="ignored")

        content_type = request.headers.get("content-type", "")
        if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
            data = dict(await request.form())
        else:
            data = await request.json()

        if not isinstance(data, dict):
            logger.warning(f"Webhook PagoTIC con payload inesperado: {type(data).__name__}")
            return ReconciliationResponse(action="ignored")

        event = PagoTICService().normalize_webhook(data)
        logger.info(
            f"Webhook PagoTIC - pago {event.provider_payment_id}, estado {event.original_status}, "
            f"ref {event.external_order_ref}"
        )
        outcome = await reconciliation.reconcile(db, event)
        return ReconciliationResponse(**outcome.to_dict())
    except Exception as e:
        # Log error pero retornar 200 para que PagoTIC no reintente
        logger.error(f"Error procesando webhook PagoTIC: {e}", exc_info=True)
        return ReconciliationResponse(action="error")
