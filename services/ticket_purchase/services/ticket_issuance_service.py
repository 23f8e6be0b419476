"""Servicio de emisión de tickets para órdenes pagadas"""
from typing import Callable, List, Optional, Set
import asyncio
import logging
import uuid

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.models import (
    Event, EventSession, Order, OrderItem, OrderStatus, Seat, Ticket, TicketCategory, User
)
from shared.exceptions import (
    InvalidStateTransition, InvariantViolation, OrderNotFound, TicketAssetError, TicketNotFound
)
from shared.utils.clock import utcnow
from shared.utils.qr_generator import generate_qr_id
from services.ticket_purchase.services.ticket_assets import TicketAssetStore, TicketView

logger = logging.getLogger(__name__)

AssetErrorHandler = Callable[[TicketAssetError], None]


class TicketIssuanceService:
    """Crea exactamente `quantity` tickets por línea de una orden PAID"""

    def __init__(self, asset_store: Optional[TicketAssetStore] = None):
        self.asset_store = asset_store or TicketAssetStore()

    async def issue_for_order(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        on_asset_error: Optional[AssetErrorHandler] = None
    ) -> List[Ticket]:
        """
        Emitir los tickets que falten para cada línea de la orden.

        Se puede llamar cualquier cantidad de veces: solo crea las unidades
        faltantes (quantity - emitidos). Los tickets se persisten antes de
        generar los assets; si un asset falla el ticket queda emitido con
        assets pendientes y se informa vía `on_asset_error`. Cada llamada
        vuelve a intentar los assets de tickets anteriores que no los tengan.

        Returns:
            Lista de tickets creados en esta llamada
        """
        order = await db.get(Order, order_id, populate_existing=True)
        if not order:
            raise OrderNotFound(str(order_id))
        if order.status != OrderStatus.PAID.value:
            raise InvalidStateTransition(str(order_id), order.status, "TICKETS_ISSUED")

        result = await db.execute(select(OrderItem).where(OrderItem.order_id == order_id))
        items = result.scalars().all()

        created: List[Ticket] = []
        for item in items:
            existing = await self._existing_sequences(db, item.id)
            if len(existing) > item.quantity:
                logger.critical(
                    f"Línea {item.id} de la orden {order_id} tiene {len(existing)} tickets "
                    f"para quantity {item.quantity}"
                )
                raise InvariantViolation(
                    "más tickets que unidades en la línea",
                    {"order_id": str(order_id), "order_item_id": str(item.id),
                     "quantity": item.quantity, "issued": len(existing)},
                )

            for sequence in range(1, item.quantity + 1):
                if sequence in existing:
                    continue
                ticket_id = uuid.uuid4()
                ticket = Ticket(
                    id=ticket_id,
                    order_item_id=item.id,
                    sequence=sequence,
                    qr_id=generate_qr_id(str(ticket_id)),
                    issued_at=utcnow(),
                )
                db.add(ticket)
                created.append(ticket)

        if created:
            try:
                await db.commit()
            except IntegrityError:
                # Otra emisión concurrente ganó la misma (línea, secuencia)
                await db.rollback()
                logger.warning(f"Orden {order_id}: emisión concurrente detectada, no se crean tickets duplicados")
                return []
            logger.info(f"Orden {order_id}: {len(created)} tickets emitidos")
        else:
            logger.info(f"Orden {order_id}: todos los tickets ya estaban emitidos")

        # Incluye tickets de emisiones anteriores que quedaron sin assets
        for ticket in await self._tickets_missing_assets(db, order_id):
            try:
                await self.generate_assets(db, ticket.id)
            except TicketAssetError as e:
                logger.warning(f"Ticket {ticket.id} emitido con assets pendientes: {e.message}")
                if on_asset_error:
                    on_asset_error(e)

        return created

    async def generate_assets(self, db: AsyncSession, ticket_id: uuid.UUID) -> Ticket:
        """
        (Re)generar QR y PDF de un ticket ya emitido y guardar sus URLs.

        Raises:
            TicketNotFound: si el ticket no existe
            TicketAssetError: si falla la generación (reintentable)
        """
        ticket, view = await self._load_view(db, ticket_id)
        assets = await asyncio.to_thread(self.asset_store.generate, view)

        ticket.qr_code_url = assets.qr_code_url
        ticket.pdf_url = assets.pdf_url
        if assets.wallet_pass_url:
            ticket.wallet_pass_url = assets.wallet_pass_url
        await db.commit()
        return ticket

    @staticmethod
    async def get_tickets_for_order(db: AsyncSession, order_id: uuid.UUID) -> List[Ticket]:
        result = await db.execute(
            select(Ticket)
            .join(OrderItem, Ticket.order_item_id == OrderItem.id)
            .where(OrderItem.order_id == order_id)
            .order_by(OrderItem.created_at, Ticket.sequence)
        )
        return list(result.scalars().all())

    @staticmethod
    async def _tickets_missing_assets(db: AsyncSession, order_id: uuid.UUID) -> List[Ticket]:
        result = await db.execute(
            select(Ticket)
            .join(OrderItem, Ticket.order_item_id == OrderItem.id)
            .where(
                OrderItem.order_id == order_id,
                or_(Ticket.pdf_url.is_(None), Ticket.qr_code_url.is_(None)),
            )
            .order_by(OrderItem.created_at, Ticket.sequence)
        )
        return list(result.scalars().all())

    @staticmethod
    async def _existing_sequences(db: AsyncSession, order_item_id: uuid.UUID) -> Set[int]:
        result = await db.execute(select(Ticket.sequence).where(Ticket.order_item_id == order_item_id))
        return set(result.scalars().all())

    @staticmethod
    async def _load_view(db: AsyncSession, ticket_id: uuid.UUID):
        result = await db.execute(
            select(Ticket, TicketCategory, EventSession, Event, User, Seat)
            .join(OrderItem, Ticket.order_item_id == OrderItem.id)
            .join(TicketCategory, OrderItem.category_id == TicketCategory.id)
            .join(EventSession, TicketCategory.session_id == EventSession.id)
            .join(Event, EventSession.event_id == Event.id)
            .join(Order, OrderItem.order_id == Order.id)
            .join(User, Order.user_id == User.id)
            .outerjoin(Seat, OrderItem.seat_id == Seat.id)
            .where(Ticket.id == ticket_id)
        )
        row = result.first()
        if not row:
            raise TicketNotFound(str(ticket_id))

        ticket, category, session, event, user, seat = row
        view = TicketView(
            ticket_id=str(ticket.id),
            qr_id=ticket.qr_id,
            event_name=event.name,
            category_name=category.name,
            holder_email=user.email,
            starts_at=session.starts_at,
            venue_name=session.venue_name or event.venue_name,
            seat_label=seat.label if seat else None,
            issued_at=ticket.issued_at,
        )
        return ticket, view
