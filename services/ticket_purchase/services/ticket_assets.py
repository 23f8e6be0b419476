"""Generación de assets de tickets: imagen QR (PNG) y PDF imprimible"""
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import Callable, Optional
import logging

import qrcode
from reportlab.lib.colors import HexColor
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from app.core.config import settings
from shared.exceptions import TicketAssetError
from shared.utils.qr_generator import build_qr_payload

logger = logging.getLogger(__name__)

MESES = ['enero', 'febrero', 'marzo', 'abril', 'mayo', 'junio',
         'julio', 'agosto', 'septiembre', 'octubre', 'noviembre', 'diciembre']
DIAS = ['Lunes', 'Martes', 'Miércoles', 'Jueves', 'Viernes', 'Sábado', 'Domingo']


@dataclass
class TicketView:
    """Datos que se imprimen en el ticket"""

    ticket_id: str
    qr_id: str
    event_name: str
    category_name: str
    holder_email: Optional[str] = None
    starts_at: Optional[datetime] = None
    venue_name: Optional[str] = None
    seat_label: Optional[str] = None
    issued_at: Optional[datetime] = None


@dataclass
class TicketAssets:
    qr_code_url: str
    pdf_url: str
    wallet_pass_url: Optional[str] = None


# Hook para pases de wallet: recibe el TicketView y devuelve la URL del pase.
# Sin configurar no se generan pases.
WalletPassBuilder = Callable[[TicketView], Optional[str]]


def render_qr_png(payload: str) -> bytes:
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def format_event_date(value: datetime) -> str:
    return f"{DIAS[value.weekday()]}, {value.day} de {MESES[value.month - 1]} de {value.year} - {value:%H:%M}"


def render_ticket_pdf(view: TicketView, qr_png: bytes) -> bytes:
    """
    Genera el PDF del ticket usando ReportLab
    """
    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=A4)
    width, height = A4

    # Colores
    primary_color = HexColor("#2563eb")
    secondary_color = HexColor("#1f2937")
    text_color = HexColor("#6b7280")
    bg_color = HexColor("#f8fafc")

    # Header
    c.setFillColor(bg_color)
    c.rect(0, height - 80*mm, width, 80*mm, fill=1, stroke=0)

    c.setFillColor(primary_color)
    c.setFont("Helvetica-Bold", 28)
    c.drawCentredString(width/2, height - 30*mm, "Ticketera")

    c.setStrokeColor(HexColor("#e5e7eb"))
    c.setLineWidth(2)
    c.line(40*mm, height - 50*mm, width - 40*mm, height - 50*mm)

    # Título del evento, partido en líneas si es muy largo
    y_pos = height - 70*mm
    c.setFillColor(secondary_color)
    c.setFont("Helvetica-Bold", 24)
    words = view.event_name.split()
    lines = []
    current_line = words[0] if words else ""
    for word in words[1:]:
        test_line = current_line + " " + word
        if c.stringWidth(test_line, "Helvetica-Bold", 24) < width - 80*mm:
            current_line = test_line
        else:
            lines.append(current_line)
            current_line = word
    lines.append(current_line)

    for i, line in enumerate(lines):
        c.drawCentredString(width/2, y_pos - i*8*mm, line)
    y_pos -= len(lines) * 8*mm + 10*mm

    # QR centrado con borde
    qr_size = 60*mm
    qr_x = (width - qr_size) / 2
    qr_y = y_pos - qr_size - 10*mm
    c.setStrokeColor(HexColor("#e5e7eb"))
    c.setLineWidth(1)
    c.rect(qr_x - 2*mm, qr_y - 2*mm, qr_size + 4*mm, qr_size + 4*mm, fill=0, stroke=1)
    c.drawImage(ImageReader(BytesIO(qr_png)), qr_x, qr_y, width=qr_size, height=qr_size)

    y_pos = qr_y - 20*mm
    c.setFillColor(text_color)
    c.setFont("Helvetica", 12)
    c.drawCentredString(width/2, y_pos, "Escanea este código en la entrada")
    y_pos -= 15*mm

    details = [("Categoría:", view.category_name)]
    if view.seat_label:
        details.append(("Ubicación:", view.seat_label))
    if view.starts_at:
        details.append(("Fecha:", format_event_date(view.starts_at)))
    if view.venue_name:
        details.append(("Lugar:", view.venue_name))

    for label, value in details:
        c.setFillColor(text_color)
        c.setFont("Helvetica", 11)
        c.drawString(40*mm, y_pos, label)
        c.setFillColor(secondary_color)
        c.setFont("Helvetica-Bold", 14)
        c.drawString(40*mm, y_pos - 6*mm, value)
        y_pos -= 12*mm

    if view.holder_email:
        y_pos -= 5*mm
        c.setFillColor(HexColor("#eff6ff"))
        c.rect(40*mm, y_pos - 15*mm, width - 80*mm, 20*mm, fill=1, stroke=0)
        c.setFillColor(primary_color)
        c.setFont("Helvetica", 11)
        c.drawString(40*mm, y_pos - 5*mm, "Titular del Ticket")
        c.setFillColor(secondary_color)
        c.setFont("Helvetica-Bold", 16)
        c.drawString(40*mm, y_pos - 12*mm, view.holder_email)

    # Footer
    c.setFillColor(text_color)
    c.setFont("Helvetica", 9)
    c.drawCentredString(width/2, 20*mm, f"ID: {view.ticket_id[-12:]}")
    c.setFont("Helvetica", 8)
    c.drawCentredString(width/2, 12*mm, "Ticketera - Sistema de Tickets")
    if view.issued_at:
        c.drawCentredString(width/2, 5*mm, view.issued_at.strftime('Emitido: %d/%m/%Y %H:%M'))

    c.save()
    return buffer.getvalue()


class TicketAssetStore:
    """Renderiza y guarda los assets de un ticket en disco"""

    def __init__(
        self,
        base_dir: Optional[str] = None,
        base_url: Optional[str] = None,
        wallet_pass_builder: Optional[WalletPassBuilder] = None
    ):
        self.base_dir = Path(base_dir or settings.TICKET_ASSETS_DIR)
        self.base_url = (base_url or settings.TICKET_ASSETS_BASE_URL).rstrip("/")
        self.wallet_pass_builder = wallet_pass_builder

    def generate(self, view: TicketView) -> TicketAssets:
        """
        Generar QR y PDF del ticket. Regenerar sobrescribe los archivos.

        Raises:
            TicketAssetError: si falla el render o la escritura
        """
        try:
            qr_png = render_qr_png(build_qr_payload(view.qr_id))
            pdf = render_ticket_pdf(view, qr_png)

            self.base_dir.mkdir(parents=True, exist_ok=True)
            (self.base_dir / f"{view.ticket_id}.png").write_bytes(qr_png)
            (self.base_dir / f"{view.ticket_id}.pdf").write_bytes(pdf)
        except Exception as e:
            logger.error(f"Error generando assets del ticket {view.ticket_id}: {e}")
            raise TicketAssetError(view.ticket_id, str(e)) from e

        wallet_pass_url = None
        if self.wallet_pass_builder:
            try:
                wallet_pass_url = self.wallet_pass_builder(view)
            except Exception as e:
                # El pase de wallet es opcional: sin él el ticket sigue siendo válido
                logger.warning(f"No se pudo generar pase de wallet para ticket {view.ticket_id}: {e}")

        return TicketAssets(
            qr_code_url=f"{self.base_url}/{view.ticket_id}.png",
            pdf_url=f"{self.base_url}/{view.ticket_id}.pdf",
            wallet_pass_url=wallet_pass_url,
        )
