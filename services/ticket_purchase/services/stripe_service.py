"""Servicio de integración con Stripe"""
import asyncio
from decimal import Decimal
from typing import Any, Dict, Optional
import logging
import uuid

import stripe

from app.core.config import settings
from shared.database.models import PaymentProvider
from shared.exceptions import PaymentProviderRejected, WebhookSignatureError
from shared.utils.retry import TransientError
from services.ticket_purchase.services.payment_gateway import (
    NormalizedStatus,
    PaymentEvent,
    PaymentGateway,
    PaymentSession,
    from_minor_units,
    to_minor_units,
)

logger = logging.getLogger(__name__)

EVENT_STATUS_MAPPING = {
    "payment_intent.succeeded": NormalizedStatus.APPROVED,
    "payment_intent.payment_failed": NormalizedStatus.CANCELLED,
    "payment_intent.canceled": NormalizedStatus.CANCELLED,
    "payment_intent.created": NormalizedStatus.PENDING,
    "payment_intent.processing": NormalizedStatus.PENDING,
    "payment_intent.requires_action": NormalizedStatus.PENDING,
}

INTENT_STATUS_MAPPING = {
    "succeeded": NormalizedStatus.APPROVED,
    "canceled": NormalizedStatus.CANCELLED,
    "processing": NormalizedStatus.PENDING,
    "requires_payment_method": NormalizedStatus.PENDING,
    "requires_confirmation": NormalizedStatus.PENDING,
    "requires_action": NormalizedStatus.PENDING,
    "requires_capture": NormalizedStatus.PENDING,
}


class StripeService(PaymentGateway):
    """Servicio para manejar pagos con Stripe (PaymentIntents)"""

    provider = PaymentProvider.STRIPE.value

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.api_key = settings.STRIPE_SECRET_KEY
        self.webhook_secret = settings.STRIPE_WEBHOOK_SECRET
        if not self.api_key:
            raise ValueError(
                "STRIPE_SECRET_KEY no configurado. "
                "Por favor, configura esta variable en tu archivo .env."
            )

    async def create_payment_session(
        self,
        order_id: uuid.UUID,
        amount: Decimal,
        currency: str,
        payer_email: Optional[str] = None,
        description: Optional[str] = None
    ) -> PaymentSession:
        """
        Crear PaymentIntent en Stripe

        Returns:
            PaymentSession con client_secret y el id del PaymentIntent
        """
        params = {
            "amount": to_minor_units(amount),  # Stripe usa centavos
            "currency": currency.lower(),
            "metadata": {"order_id": str(order_id)},
            "description": description or f"Compra de tickets - Orden {order_id}",
        }
        if payer_email:
            params["receipt_email"] = payer_email

        async def request():
            try:
                return await asyncio.to_thread(
                    stripe.PaymentIntent.create,
                    api_key=self.api_key,
                    # El mismo intent para todos los reintentos de esta orden
                    idempotency_key=f"order-{order_id}-payment-intent",
                    **params
                )
            except stripe.StripeError as e:
                raise self._classify(e) from e

        logger.info(f"Creando PaymentIntent Stripe para orden {order_id}, monto: {amount} {currency}")
        intent = await self.call_with_retry(request, "create_payment_intent")

        logger.info(f"PaymentIntent Stripe creado: {intent['id']} para orden {order_id}")
        return PaymentSession(
            provider=self.provider,
            provider_payment_id=intent["id"],
            client_secret=intent.get("client_secret"),
            raw_response=self._to_dict(intent),
        )

    async def fetch_payment(self, provider_payment_id: str) -> PaymentEvent:
        """Consultar el PaymentIntent y normalizar su estado actual"""
        async def request():
            try:
                return await asyncio.to_thread(
                    stripe.PaymentIntent.retrieve, provider_payment_id, api_key=self.api_key
                )
            except stripe.StripeError as e:
                raise self._classify(e) from e

        intent = self._to_dict(await self.call_with_retry(request, "retrieve_payment_intent"))
        status = intent.get("status")
        normalized = INTENT_STATUS_MAPPING.get(status, NormalizedStatus.UNKNOWN)
        return PaymentEvent(
            provider=self.provider,
            provider_payment_id=intent.get("id"),
            external_order_ref=(intent.get("metadata") or {}).get("order_id"),
            normalized_status=normalized,
            original_status=status,
            raw_payload=intent,
            amount=self._intent_amount(intent),
        )

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> None:
        """
        Verificar la firma Stripe-Signature contra el secreto compartido

        Raises:
            WebhookSignatureError: si falta la firma o no coincide
        """
        if not signature:
            raise WebhookSignatureError(self.provider, "falta header Stripe-Signature")
        if not self.webhook_secret:
            raise WebhookSignatureError(self.provider, "STRIPE_WEBHOOK_SECRET no configurado")
        try:
            # Solo la firma: el body lo parsea y valida el endpoint
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, self.webhook_secret, stripe.Webhook.DEFAULT_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(self.provider, str(e))
        except ValueError as e:
            raise WebhookSignatureError(self.provider, f"payload inválido: {e}")

    def normalize_webhook(self, raw_payload: Dict[str, Any]) -> PaymentEvent:
        event_type = raw_payload.get("type")
        intent = (raw_payload.get("data") or {}).get("object") or {}
        metadata = intent.get("metadata") or {}

        normalized = EVENT_STATUS_MAPPING.get(event_type, NormalizedStatus.UNKNOWN)
        if normalized == NormalizedStatus.UNKNOWN:
            logger.info(f"Stripe: evento no manejado '{event_type}'")

        return PaymentEvent(
            provider=self.provider,
            provider_payment_id=intent.get("id"),
            external_order_ref=metadata.get("order_id"),
            normalized_status=normalized,
            original_status=event_type,
            raw_payload=dict(raw_payload),
            amount=self._intent_amount(intent),
        )

    def _classify(self, error: stripe.StripeError) -> Exception:
        """Separar fallos transitorios (red, 5xx, 429) de rechazos (4xx)"""
        status_code = getattr(error, "http_status", None)
        if isinstance(error, stripe.APIConnectionError) or status_code is None:
            return TransientError(f"Error de conexión con Stripe: {error}")
        if status_code >= 500 or status_code == 429:
            return TransientError(f"Stripe respondió {status_code}: {error}")
        logger.error(f"Stripe rechazó la solicitud - Status: {status_code}, Mensaje: {error}")
        return PaymentProviderRejected(self.provider, status_code, getattr(error, "user_message", None) or str(error))

    @staticmethod
    def _intent_amount(intent: Dict[str, Any]) -> Optional[Decimal]:
        # amount_received solo se completa cuando el cobro se acreditó
        received = intent.get("amount_received")
        return from_minor_units(received if received else intent.get("amount"))

    @staticmethod
    def _to_dict(obj: Any) -> Dict[str, Any]:
        to_dict = getattr(obj, "to_dict_recursive", None) or getattr(obj, "to_dict", None)
        if callable(to_dict):
            return to_dict()
        return dict(obj)
