"""Errores de dominio del motor de órdenes y pagos"""
from datetime import datetime
from typing import Any, Dict, List, Optional


class TicketingError(Exception):
    """Base de todos los errores de dominio"""

    code = "ticketing_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message}


class InsufficientInventory(TicketingError):
    code = "insufficient_inventory"

    def __init__(self, unavailable: List[str]):
        self.unavailable = list(unavailable)
        super().__init__(
            f"Inventario insuficiente para: {', '.join(self.unavailable)}"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["unavailable"] = self.unavailable
        return data


class OrderNotFound(TicketingError):
    code = "order_not_found"

    def __init__(self, order_id: str):
        self.order_id = str(order_id)
        super().__init__(f"Orden {self.order_id} no encontrada")


class InvalidStateTransition(TicketingError):
    code = "invalid_state_transition"

    def __init__(self, order_id: str, current: str, target: str):
        self.order_id = str(order_id)
        self.current = current
        self.target = target
        super().__init__(
            f"Transición inválida para orden {self.order_id}: {current} -> {target}"
        )


class PaymentProviderRejected(TicketingError):
    """El proveedor rechazó la solicitud (4xx). No se reintenta."""

    code = "payment_provider_rejected"

    def __init__(self, provider: str, status_code: Optional[int] = None, detail: str = ""):
        self.provider = provider
        self.status_code = status_code
        self.detail = detail
        super().__init__(
            f"{provider} rechazó la solicitud de pago (status={status_code}): {detail}"
        )


class PaymentProviderUnavailable(TicketingError):
    """Se agotaron los reintentos contra el proveedor (5xx/red/timeout)."""

    code = "payment_provider_unavailable"

    def __init__(self, provider: str, attempts: int, detail: str = ""):
        self.provider = provider
        self.attempts = attempts
        self.detail = detail
        super().__init__(
            f"{provider} no disponible tras {attempts} intentos: {detail}"
        )


class WebhookSignatureError(TicketingError):
    code = "invalid_signature"

    def __init__(self, provider: str, detail: str = ""):
        self.provider = provider
        super().__init__(f"Firma de webhook inválida ({provider}): {detail}")


class TicketNotFound(TicketingError):
    code = "ticket_not_found"

    def __init__(self, ticket_ref: str):
        self.ticket_ref = ticket_ref
        super().__init__("Ticket no encontrado")


class TicketAlreadyUsed(TicketingError):
    code = "ticket_already_used"

    def __init__(self, ticket_id: str, used_at: datetime):
        self.ticket_id = str(ticket_id)
        self.used_at = used_at
        super().__init__(f"Ticket ya utilizado el {used_at.isoformat()}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["ticket_id"] = self.ticket_id
        data["used_at"] = self.used_at.isoformat()
        return data


class TicketAssetError(TicketingError):
    """Fallo generando QR/PDF de un ticket. Reintentable, el ticket ya existe."""

    code = "ticket_asset_error"

    def __init__(self, ticket_id: str, detail: str = ""):
        self.ticket_id = str(ticket_id)
        super().__init__(f"Error generando assets del ticket {self.ticket_id}: {detail}")


class InvariantViolation(TicketingError):
    """El ledger y la orden divergieron. Es un bug, nunca un error de usuario."""

    code = "invariant_violation"

    def __init__(self, detail: str, context: Optional[Dict[str, Any]] = None):
        self.detail = detail
        self.context = context or {}
        super().__init__(f"Violación de invariante: {detail}")
