"""Tareas Celery de emisión de tickets y expiración de órdenes"""
import asyncio
import logging
import uuid

from shared.cache.celery_app import celery_app
from shared.database.connection import close_db
from shared.database.session import background_session
from shared.exceptions import TicketAssetError

logger = logging.getLogger(__name__)


def run_async(coro):
    """Helper para ejecutar coroutines en contexto síncrono de Celery"""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _with_session(work):
    # El engine queda atado al loop de esta tarea: se cierra al terminar
    try:
        async with background_session() as db:
            return await work(db)
    finally:
        await close_db()


@celery_app.task(
    name="issue_order_tickets",
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_kwargs={"max_retries": 5},
)
def issue_order_tickets(self, order_id: str):
    """
    Completar la emisión de tickets de una orden pagada.

    Seguro de repetir: solo crea las unidades faltantes.
    """
    from services.ticket_purchase.services.ticket_issuance_service import TicketIssuanceService

    service = TicketIssuanceService()
    failed_assets = []

    async def work(db):
        tickets = await service.issue_for_order(db, uuid.UUID(order_id), on_asset_error=failed_assets.append)
        return len(tickets)

    logger.info(f"[CELERY] Emitiendo tickets pendientes de la orden {order_id}")
    issued = run_async(_with_session(work))

    for error in failed_assets:
        regenerate_ticket_assets.delay(error.ticket_id)

    logger.info(f"[CELERY] Orden {order_id}: {issued} tickets emitidos, {len(failed_assets)} con assets pendientes")
    return {"order_id": order_id, "issued": issued, "assets_pending": len(failed_assets)}


@celery_app.task(
    name="regenerate_ticket_assets",
    bind=True,
    autoretry_for=(TicketAssetError,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_kwargs={"max_retries": 5},
)
def regenerate_ticket_assets(self, ticket_id: str):
    """Regenerar QR y PDF de un ticket ya emitido"""
    from services.ticket_purchase.services.ticket_issuance_service import TicketIssuanceService

    service = TicketIssuanceService()

    async def work(db):
        ticket = await service.generate_assets(db, uuid.UUID(ticket_id))
        return ticket.pdf_url

    pdf_url = run_async(_with_session(work))
    logger.info(f"[CELERY] Assets regenerados para ticket {ticket_id}")
    return {"ticket_id": ticket_id, "pdf_url": pdf_url}


@celery_app.task(name="sweep_expired_orders")
def sweep_expired_orders():
    """Expirar órdenes PENDING vencidas (beat periódico)"""
    from services.ticket_purchase.services.expiry_sweeper import ExpirySweeper

    sweeper = ExpirySweeper()
    reclaimed = run_async(_with_session(sweeper.sweep))
    return {"reclaimed": reclaimed}
