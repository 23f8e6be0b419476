"""Utilidades para generar y leer los identificadores QR de tickets"""
import hashlib
import hmac
import secrets
from typing import Optional

from app.core.config import settings

QR_PAYLOAD_PREFIX = "ticket:"


def generate_qr_id(ticket_id: str, secret: Optional[str] = None) -> str:
    """
    Generar un identificador QR único e impredecible para un ticket

    Combina 16 bytes aleatorios con un HMAC-SHA256 sobre el ticket_id, de modo
    que conocer otros tickets de la misma orden no permite adivinar este.

    Args:
        ticket_id: UUID del ticket como string
        secret: Secret key para HMAC (default: settings.QR_SECRET)

    Returns:
        String hexadecimal de 64 caracteres
    """
    if secret is None:
        secret = settings.QR_SECRET

    nonce = secrets.token_hex(16)
    message = f"{QR_PAYLOAD_PREFIX}{ticket_id}:{nonce}"
    signature = hmac.new(
        secret.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()

    # Primeros 32 del nonce + primeros 32 de la firma
    return f"{nonce}{signature[:32]}"


def build_qr_payload(qr_id: str) -> str:
    """Texto codificado en la imagen QR"""
    return f"{QR_PAYLOAD_PREFIX}{qr_id}"


def parse_qr_payload(raw: str) -> str:
    """
    Extraer la referencia del ticket de lo leído por el escáner.

    Acepta tanto `ticket:<ref>` como la referencia sola.
    """
    value = (raw or "").strip()
    if value.startswith(QR_PAYLOAD_PREFIX):
        value = value[len(QR_PAYLOAD_PREFIX):]
    return value.strip()
