"""Contrato común de los adaptadores de proveedores de pago"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
import logging
import uuid

from app.core.config import settings
from shared.exceptions import PaymentProviderUnavailable
from shared.utils.retry import TransientError, retry_with_backoff

logger = logging.getLogger(__name__)


class NormalizedStatus(str, Enum):
    APPROVED = "APPROVED"
    CANCELLED = "CANCELLED"
    PENDING = "PENDING"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class PaymentEvent:
    """Notificación de pago ya traducida al vocabulario interno"""

    provider: str
    provider_payment_id: Optional[str]
    external_order_ref: Optional[str]
    normalized_status: NormalizedStatus
    original_status: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)
    amount: Optional[Decimal] = None  # Monto que informa el proveedor, si lo trae


@dataclass(frozen=True)
class PaymentSession:
    provider: str
    provider_payment_id: str
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    external_transaction_id: Optional[str] = None
    raw_response: Dict[str, Any] = field(default_factory=dict)

    @property
    def redirect_or_client_secret(self) -> Optional[str]:
        return self.redirect_url or self.client_secret


class PaymentGateway(ABC):
    """Adaptador de un proveedor de pago"""

    provider: str = ""

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        timeout_seconds: Optional[float] = None
    ):
        self.max_attempts = max_attempts or settings.PROVIDER_MAX_ATTEMPTS
        self.backoff_seconds = settings.PROVIDER_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self.timeout_seconds = timeout_seconds or settings.PROVIDER_TIMEOUT_SECONDS

    @abstractmethod
    async def create_payment_session(
        self,
        order_id: uuid.UUID,
        amount: Decimal,
        currency: str,
        payer_email: Optional[str] = None,
        description: Optional[str] = None
    ) -> PaymentSession:
        """Crear la sesión de pago en el proveedor"""

    @abstractmethod
    def normalize_webhook(self, raw_payload: Dict[str, Any]) -> PaymentEvent:
        """Traducir un payload de webhook a PaymentEvent"""

    async def fetch_payment(self, provider_payment_id: str) -> PaymentEvent:
        """Consultar el estado actual de un pago (polling)"""
        raise NotImplementedError(f"{self.provider} no soporta consulta de pagos")

    async def call_with_retry(self, func: Callable[[], Awaitable[Any]], operation: str) -> Any:
        """
        Ejecutar una llamada al proveedor reintentando solo fallos transitorios.

        Raises:
            PaymentProviderUnavailable: si se agotan los intentos
            PaymentProviderRejected: propagado sin reintentar
        """
        def log_retry(attempt: int, error: Exception, delay: float):
            logger.warning(
                f"{self.provider} {operation}: fallo transitorio (intento {attempt}/{self.max_attempts}): "
                f"{error}. Reintentando en {delay:.1f}s..."
            )

        try:
            return await retry_with_backoff(
                func,
                max_retries=self.max_attempts - 1,
                initial_delay=self.backoff_seconds,
                max_delay=self.backoff_seconds * 8 or 1.0,
                exceptions=(TransientError,),
                on_retry=log_retry,
            )
        except TransientError as e:
            logger.error(f"{self.provider} {operation}: agotados {self.max_attempts} intentos: {e}")
            raise PaymentProviderUnavailable(self.provider, self.max_attempts, str(e))


def to_minor_units(amount: Decimal) -> int:
    """Monto en centavos (unidad mínima de la moneda)"""
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def from_minor_units(amount: Any) -> Optional[Decimal]:
    if amount is None:
        return None
    return (Decimal(int(amount)) / 100).quantize(Decimal("0.01"))


def parse_amount(value: Any) -> Optional[Decimal]:
    """Monto decimal desde JSON o form-urlencoded; None si no es numérico"""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount.quantize(Decimal("0.01"))
