"""Servicio de integración con PagoTIC - Async con httpx"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional
import hmac
import json
import time
import logging
import uuid

import httpx

from app.core.config import settings
from shared.database.models import PaymentProvider
from shared.exceptions import PaymentProviderRejected
from shared.utils.retry import TransientError
from services.ticket_purchase.services.payment_gateway import (
    NormalizedStatus,
    PaymentEvent,
    PaymentGateway,
    PaymentSession,
    parse_amount,
)

logger = logging.getLogger(__name__)

# Vocabulario de estados de PagoTIC
APPROVED_STATUSES = {"approved", "accredited", "paid", "success", "aprobado", "pagado"}
PENDING_STATUSES = {"pending", "in_process", "authorized", "issued", "review", "validate", "pendiente"}
CANCELLED_STATUSES = {
    "rejected", "cancelled", "canceled", "refunded", "objected", "overdue", "failed",
    "rechazado", "cancelado",
}

# Diferencia tolerada entre montos informados por PagoTIC
AMOUNT_TOLERANCE = Decimal("0.01")

# Margen antes del vencimiento real del token
TOKEN_EXPIRY_SKEW_SECONDS = 60
DEFAULT_TOKEN_TTL_SECONDS = 300


def normalize_pagotic_status(status: Optional[str]) -> NormalizedStatus:
    value = (status or "").strip().lower()
    if value in APPROVED_STATUSES:
        return NormalizedStatus.APPROVED
    if value in CANCELLED_STATUSES:
        return NormalizedStatus.CANCELLED
    if value in PENDING_STATUSES:
        return NormalizedStatus.PENDING
    return NormalizedStatus.UNKNOWN


def _load_json_field(value: Any) -> Any:
    # En form-urlencoded los campos anidados llegan como JSON serializado
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


def sum_details_amount(details: Any) -> Optional[Decimal]:
    if not isinstance(details, list) or not details:
        return None
    amounts = [parse_amount(d.get("amount")) for d in details if isinstance(d, dict)]
    amounts = [a for a in amounts if a is not None]
    if not amounts:
        return None
    return sum(amounts, Decimal("0.00"))


def reported_amount(raw_payload: Dict[str, Any]) -> Optional[Decimal]:
    """Monto del pago: final_amount, amount o la suma de los details"""
    for key in ("final_amount", "amount"):
        amount = parse_amount(raw_payload.get(key))
        if amount is not None:
            return amount
    return sum_details_amount(_load_json_field(raw_payload.get("details")))


def generate_external_transaction_id(order_id: uuid.UUID) -> str:
    return f"order-{order_id}-{int(time.time() * 1000)}"


@dataclass
class CachedToken:
    token: Optional[str] = None
    expires_at: float = 0.0

    def is_valid(self, now: float) -> bool:
        return bool(self.token) and now < self.expires_at


# Cache de token a nivel de proceso. Refrescarlo dos veces en paralelo es
# inofensivo, por eso no lleva lock.
_token_cache = CachedToken()


def reset_token_cache():
    _token_cache.token = None
    _token_cache.expires_at = 0.0


class PagoTICService(PaymentGateway):
    """Servicio para manejar pagos con PagoTIC"""

    provider = PaymentProvider.PAGOTIC.value

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, **kwargs):
        super().__init__(**kwargs)
        self.client_id = settings.PAGOTIC_CLIENT_ID
        self.client_secret = settings.PAGOTIC_CLIENT_SECRET
        self.username = settings.PAGOTIC_USERNAME
        self.password = settings.PAGOTIC_PASSWORD

        if not self.client_id or not self.client_secret:
            raise ValueError(
                "PAGOTIC_CLIENT_ID y PAGOTIC_CLIENT_SECRET no configurados. "
                "Por favor, configura estas variables en tu archivo .env."
            )

        self.base_url = settings.PAGOTIC_BASE_URL.rstrip("/")
        self.auth_url = settings.PAGOTIC_AUTH_URL
        self.frontend_url = settings.APP_BASE_URL.rstrip("/")
        self.webhook_base_url = (settings.WEBHOOK_BASE_URL or self.frontend_url).rstrip("/")
        self._transport = transport

        logger.debug(
            f"PagoTIC configurado - base_url: {self.base_url}, "
            f"client_id: {self.client_id[:8]}..., grant: {'password' if self.username else 'client_credentials'}"
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)

    async def _fetch_token(self) -> CachedToken:
        form = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        if self.username and self.password:
            form.update({"grant_type": "password", "username": self.username, "password": self.password})

        async def request():
            try:
                async with self._client() as client:
                    response = await client.post(
                        self.auth_url,
                        data=form,
                        headers={"Content-Type": "application/x-www-form-urlencoded"},
                    )
            except (httpx.TimeoutException, httpx.TransportError) as e:
                raise TransientError(f"Error de conexión con PagoTIC auth: {e}")
            self._raise_for_status(response, "auth")
            return response.json()

        data = await self.call_with_retry(request, "auth")
        access_token = data.get("access_token")
        if not access_token:
            raise PaymentProviderRejected(self.provider, 200, "access_token ausente en la respuesta de auth")

        expires_in = int(data.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS)
        logger.info(f"PagoTIC: nuevo token generado, expira en {expires_in}s")
        return CachedToken(token=access_token, expires_at=time.time() + expires_in - TOKEN_EXPIRY_SKEW_SECONDS)

    async def get_token(self, force_refresh: bool = False) -> str:
        """Obtener token desde cache o pedir uno nuevo si no hay o venció"""
        if not force_refresh and _token_cache.is_valid(time.time()):
            return _token_cache.token

        fresh = await self._fetch_token()
        _token_cache.token = fresh.token
        _token_cache.expires_at = fresh.expires_at
        return fresh.token

    async def create_payment_session(
        self,
        order_id: uuid.UUID,
        amount: Decimal,
        currency: str,
        payer_email: Optional[str] = None,
        description: Optional[str] = None
    ) -> PaymentSession:
        """
        Crear pago en PagoTIC (POST /pagos)

        Returns:
            PaymentSession con form_url para redirección y el id del pago
        """
        external_transaction_id = generate_external_transaction_id(order_id)
        body: Dict[str, Any] = {
            "type": "online",
            "external_transaction_id": external_transaction_id,
            "return_url": f"{self.frontend_url}/checkout/confirmation?order_id={order_id}",
            "back_url": f"{self.frontend_url}/checkout/failed?order_id={order_id}",
            "notification_url": f"{self.webhook_base_url}/api/v1/webhooks/pagotic",
            "currency_id": currency,
            "details": [{
                "external_reference": str(order_id),
                "concept_id": settings.PAGOTIC_CONCEPT_ID,
                "concept_description": description or f"Compra de tickets - Orden {order_id}",
                "amount": float(Decimal(amount).quantize(Decimal("0.01"))),
                "currency_id": currency,
            }],
            "metadata": {"order_id": str(order_id)},
        }
        if settings.PAGOTIC_COLLECTOR_ID:
            body["collector_id"] = settings.PAGOTIC_COLLECTOR_ID
        if payer_email:
            body["payer"] = {"email": payer_email}

        logger.info(f"Creando pago PagoTIC para orden {order_id}, monto: {amount} {currency}")
        data = await self._authorized_request("POST", "/pagos", "create_payment", json=body)

        payment_id = data.get("id")
        form_url = data.get("form_url") or data.get("checkout_url")
        if not payment_id or not form_url:
            logger.error(f"Respuesta PagoTIC sin id/form_url: {data}")
            raise PaymentProviderRejected(self.provider, 200, "respuesta sin id o form_url")

        logger.info(f"Pago PagoTIC creado: {payment_id} para orden {order_id}")
        return PaymentSession(
            provider=self.provider,
            provider_payment_id=str(payment_id),
            redirect_url=form_url,
            external_transaction_id=data.get("external_transaction_id") or external_transaction_id,
            raw_response=data,
        )

    async def fetch_payment(self, provider_payment_id: str) -> PaymentEvent:
        """Consultar un pago (GET /pagos/{id}) y normalizarlo"""
        data = await self._authorized_request("GET", f"/pagos/{provider_payment_id}", "get_payment")
        return self.normalize_webhook(data)

    @staticmethod
    def verify_webhook(signature: Optional[str]) -> bool:
        """Comparar x-pagotic-signature con el secreto compartido (si hay uno configurado)"""
        secret = settings.PAGOTIC_WEBHOOK_SECRET
        if not secret:
            return True
        return bool(signature) and hmac.compare_digest(signature, secret)

    def normalize_webhook(self, raw_payload: Dict[str, Any]) -> PaymentEvent:
        """
        Procesar webhook de PagoTIC

        Acepta `id` o `payment_id`; el external_transaction_id puede venir en
        la raíz o dentro de metadata.
        """
        payment_id = raw_payload.get("id") or raw_payload.get("payment_id")
        external_ref = raw_payload.get("external_transaction_id")
        metadata = _load_json_field(raw_payload.get("metadata"))
        if not external_ref and isinstance(metadata, dict):
            external_ref = metadata.get("external_transaction_id") or metadata.get("order_id")

        status = raw_payload.get("status")
        normalized = normalize_pagotic_status(status)
        if normalized == NormalizedStatus.UNKNOWN:
            logger.warning(f"PagoTIC: estado desconocido '{status}' para pago {payment_id}")

        amount = reported_amount(raw_payload)
        details_sum = sum_details_amount(_load_json_field(raw_payload.get("details")))
        if amount is not None and details_sum is not None and abs(details_sum - amount) > AMOUNT_TOLERANCE:
            logger.warning(
                f"PagoTIC: monto del pago {payment_id} ({amount}) no coincide con la suma de details ({details_sum})"
            )

        return PaymentEvent(
            provider=self.provider,
            provider_payment_id=str(payment_id) if payment_id else None,
            external_order_ref=str(external_ref).strip() if external_ref else None,
            normalized_status=normalized,
            original_status=status,
            raw_payload=dict(raw_payload),
            amount=amount,
        )

    async def _authorized_request(self, method: str, path: str, operation: str, **kwargs) -> Dict[str, Any]:
        """Request con Bearer; ante un 401 se fuerza un token nuevo y se reintenta una vez"""
        async def request(token: str):
            async def send():
                return await self._send(method, path, token, **kwargs)
            return await self.call_with_retry(send, operation)

        response = await request(await self.get_token())

        if response.status_code == 401:
            logger.warning(f"PagoTIC {operation}: 401, regenerando token y reintentando una vez")
            response = await request(await self.get_token(force_refresh=True))

        self._raise_for_status(response, operation)
        return response.json()

    async def _send(self, method: str, path: str, token: str, **kwargs) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            async with self._client() as client:
                response = await client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientError(f"Error de conexión con PagoTIC: {e}")

        if response.status_code >= 500:
            raise TransientError(f"PagoTIC respondió {response.status_code}")
        return response

    def _raise_for_status(self, response: httpx.Response, operation: str):
        if response.status_code >= 500:
            raise TransientError(f"PagoTIC {operation} respondió {response.status_code}")
        if response.status_code >= 400:
            detail = self._error_message(response)
            logger.error(f"PagoTIC {operation} rechazado - Status: {response.status_code}, Mensaje: {detail}")
            raise PaymentProviderRejected(self.provider, response.status_code, detail)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text or "Error desconocido"
        if isinstance(data, dict):
            return str(data.get("message") or data.get("error") or data.get("detail") or data)
        return str(data)
