"""Servicio de validación de tickets en la entrada"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple
import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.models import (
    Event, EventSession, Order, OrderItem, Ticket, TicketCategory, User, ValidationLog
)
from shared.exceptions import TicketAlreadyUsed, TicketNotFound
from shared.utils.clock import utcnow
from shared.utils.qr_generator import parse_qr_payload

logger = logging.getLogger(__name__)

VALID = "VALID"
ALREADY_USED = "ALREADY_USED"


@dataclass
class ValidationResult:
    status: str
    ticket_id: str
    used_at: datetime
    event_name: str
    user_email: str


class TicketValidationService:
    """Servicio para validar tickets mediante QR o ID"""

    @staticmethod
    async def validate(
        db: AsyncSession,
        ticket_ref: str,
        validator_id: Optional[str] = None,
        device: Optional[str] = None
    ) -> ValidationResult:
        """
        Marcar el ticket como usado. Solo la primera validación tiene éxito.

        La marca de uso y el registro en ValidationLog se escriben en la misma
        transacción.

        Raises:
            TicketNotFound: si la referencia no corresponde a ningún ticket
            TicketAlreadyUsed: si ya fue usado (incluye el used_at original)
        """
        ticket, event_name, user_email = await TicketValidationService.resolve(db, ticket_ref)
        now = utcnow()

        try:
            # Solo una validación puede pasar used_at de NULL a un timestamp
            result = await db.execute(
                update(Ticket)
                .where(Ticket.id == ticket.id, Ticket.used_at.is_(None))
                .values(used_at=now, validator_id=validator_id, device=device)
                .execution_options(synchronize_session=False)
            )
            outcome = VALID if result.rowcount == 1 else ALREADY_USED

            db.add(ValidationLog(
                id=uuid.uuid4(),
                ticket_id=ticket.id,
                validator_id=validator_id,
                device=device,
                result=outcome,
                created_at=now,
            ))
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        await db.refresh(ticket)

        if outcome == ALREADY_USED:
            logger.info(
                f"Ticket {ticket.id} rechazado en {device or 'dispositivo desconocido'}: "
                f"ya usado el {ticket.used_at.isoformat()}"
            )
            raise TicketAlreadyUsed(str(ticket.id), ticket.used_at)

        logger.info(f"Ticket {ticket.id} validado por {validator_id} en {device or 'dispositivo desconocido'}")
        return ValidationResult(
            status=VALID,
            ticket_id=str(ticket.id),
            used_at=ticket.used_at,
            event_name=event_name,
            user_email=user_email,
        )

    @staticmethod
    async def resolve(db: AsyncSession, ticket_ref: str) -> Tuple[Ticket, str, str]:
        """
        Buscar el ticket por ID, por qr_id o por el payload `ticket:<ref>`

        Returns:
            (ticket, nombre del evento, email del comprador)
        """
        ref = parse_qr_payload(ticket_ref)
        if not ref:
            raise TicketNotFound(ticket_ref)

        stmt = (
            select(Ticket, Event.name, User.email)
            .join(OrderItem, Ticket.order_item_id == OrderItem.id)
            .join(TicketCategory, OrderItem.category_id == TicketCategory.id)
            .join(EventSession, TicketCategory.session_id == EventSession.id)
            .join(Event, EventSession.event_id == Event.id)
            .join(Order, OrderItem.order_id == Order.id)
            .join(User, Order.user_id == User.id)
        )

        try:
            ticket_id = uuid.UUID(ref)
        except ValueError:
            ticket_id = None

        if ticket_id:
            stmt = stmt.where(Ticket.id == ticket_id)
        else:
            stmt = stmt.where(Ticket.qr_id == ref)

        row = (await db.execute(stmt)).first()
        if not row:
            logger.info(f"Validación: ticket no encontrado para referencia '{ref[:16]}'")
            raise TicketNotFound(ticket_ref)
        return row[0], row[1], row[2]

    @staticmethod
    async def get_ticket_by_id(db: AsyncSession, ticket_id: uuid.UUID) -> Optional[Ticket]:
        """Obtener ticket por ID"""
        result = await db.execute(select(Ticket).where(Ticket.id == ticket_id))
        return result.scalar_one_or_none()
