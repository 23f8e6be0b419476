"""Traducción de errores de dominio a respuestas HTTP"""
from fastapi import HTTPException, status
import logging

from shared.exceptions import (
    InsufficientInventory,
    InvalidStateTransition,
    InvariantViolation,
    OrderNotFound,
    PaymentProviderRejected,
    PaymentProviderUnavailable,
    TicketAlreadyUsed,
    TicketAssetError,
    TicketingError,
    TicketNotFound,
    WebhookSignatureError,
)

logger = logging.getLogger(__name__)

STATUS_BY_ERROR = (
    (InsufficientInventory, status.HTTP_409_CONFLICT),
    (TicketAlreadyUsed, status.HTTP_409_CONFLICT),
    (InvalidStateTransition, status.HTTP_409_CONFLICT),
    (OrderNotFound, status.HTTP_404_NOT_FOUND),
    (TicketNotFound, status.HTTP_404_NOT_FOUND),
    (PaymentProviderRejected, status.HTTP_400_BAD_REQUEST),
    (WebhookSignatureError, status.HTTP_400_BAD_REQUEST),
    (PaymentProviderUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (TicketAssetError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (InvariantViolation, status.HTTP_500_INTERNAL_SERVER_ERROR),
)

PROVIDER_UNAVAILABLE_MESSAGE = (
    "El proveedor de pago no está disponible en este momento. "
    "Puedes reintentar sin riesgo de cobro duplicado."
)


def to_http_exception(error: TicketingError) -> HTTPException:
    """Mapear un TicketingError a HTTPException con detalle estructurado"""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            status_code = code
            break

    detail = error.to_dict()
    if isinstance(error, InvariantViolation):
        logger.critical(f"Violación de invariante: {error.detail} - contexto: {error.context}")
        detail = {"error": error.code, "detail": "Error interno. El equipo fue notificado."}
    elif isinstance(error, PaymentProviderUnavailable):
        detail = {"error": error.code, "detail": PROVIDER_UNAVAILABLE_MESSAGE}

    return HTTPException(status_code=status_code, detail=detail)
