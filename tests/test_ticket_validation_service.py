"""Validación en la entrada: cada ticket entra una sola vez"""
import uuid

import pytest
from sqlalchemy import select

from shared.database.models import ValidationLog
from shared.exceptions import TicketAlreadyUsed, TicketNotFound
from shared.utils.qr_generator import build_qr_payload, generate_qr_id, parse_qr_payload
from services.ticket_purchase.services.inventory_service import InventoryRef
from services.ticket_purchase.services.order_service import OrderLine, OrderService
from services.ticket_validation.services.ticket_service import ALREADY_USED, VALID, TicketValidationService


@pytest.fixture
async def tickets(db, catalog, issuance_service):
    order = await OrderService().create(
        db, catalog.user.id, [OrderLine(ref=InventoryRef(category_id=catalog.general.id), quantity=2)]
    )
    order_id = order.id
    await OrderService().transition_to_paid(db, order_id)
    return await issuance_service.issue_for_order(db, order_id)


async def validation_results(db, ticket_id):
    result = await db.execute(
        select(ValidationLog.result).where(ValidationLog.ticket_id == ticket_id).order_by(ValidationLog.created_at)
    )
    return result.scalars().all()


def test_qr_ids_are_unique_and_payload_round_trips():
    ids = {generate_qr_id("mismo-ticket") for _ in range(50)}
    assert len(ids) == 50

    qr_id = generate_qr_id(str(uuid.uuid4()))
    assert parse_qr_payload(build_qr_payload(qr_id)) == qr_id
    assert parse_qr_payload(f"  {qr_id} ") == qr_id


async def test_first_validation_succeeds(db, catalog, tickets):
    ticket = tickets[0]

    result = await TicketValidationService.validate(
        db, build_qr_payload(ticket.qr_id), validator_id=str(catalog.scanner.id), device="puerta-1"
    )

    assert result.status == VALID
    assert result.ticket_id == str(ticket.id)
    assert result.event_name == "Festival de Primavera"
    assert result.user_email == "comprador@example.com"
    assert result.used_at is not None
    assert ticket.validator_id == str(catalog.scanner.id)
    assert ticket.device == "puerta-1"
    assert await validation_results(db, ticket.id) == [VALID]


async def test_second_validation_reports_original_use(db, catalog, tickets):
    ticket = tickets[0]
    first = await TicketValidationService.validate(db, ticket.qr_id, device="puerta-1")

    with pytest.raises(TicketAlreadyUsed) as exc_info:
        await TicketValidationService.validate(db, ticket.qr_id, device="puerta-2")

    assert exc_info.value.used_at == first.used_at
    assert exc_info.value.to_dict()["used_at"] == first.used_at.isoformat()
    assert ticket.device == "puerta-1"
    assert sorted(await validation_results(db, ticket.id)) == [ALREADY_USED, VALID]


async def test_validation_by_ticket_id(db, tickets):
    result = await TicketValidationService.validate(db, str(tickets[1].id))

    assert result.status == VALID
    assert result.ticket_id == str(tickets[1].id)


async def test_validating_one_ticket_does_not_use_the_other(db, tickets):
    await TicketValidationService.validate(db, tickets[0].qr_id)

    result = await TicketValidationService.validate(db, tickets[1].qr_id)
    assert result.status == VALID


async def test_unknown_ticket(db, tickets):
    with pytest.raises(TicketNotFound):
        await TicketValidationService.validate(db, "ticket:" + "f" * 64)
    with pytest.raises(TicketNotFound):
        await TicketValidationService.validate(db, str(uuid.uuid4()))
    with pytest.raises(TicketNotFound):
        await TicketValidationService.validate(db, "   ")
