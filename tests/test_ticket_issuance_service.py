"""Emisión de tickets: exactamente `quantity` por línea y assets regenerables"""
from pathlib import Path
import uuid

import pytest

from shared.database.models import Ticket
from shared.exceptions import InvalidStateTransition, InvariantViolation, OrderNotFound, TicketNotFound
from shared.utils.clock import utcnow
from services.ticket_purchase.services.inventory_service import InventoryRef
from services.ticket_purchase.services.order_service import OrderLine, OrderService
from services.ticket_purchase.services.ticket_issuance_service import TicketIssuanceService

from factories import FailingAssetStore


async def paid_order(db, catalog, quantity=3, seat=None):
    lines = [OrderLine(ref=InventoryRef(category_id=catalog.general.id), quantity=quantity)]
    if seat is not None:
        lines.append(OrderLine(ref=InventoryRef(seat_id=seat.id)))
    order = await OrderService().create(db, catalog.user.id, lines)
    order_id = order.id
    await OrderService().transition_to_paid(db, order_id)
    return order_id


async def test_issues_exactly_quantity_tickets(db, catalog, issuance_service):
    order_id = await paid_order(db, catalog, quantity=3)

    tickets = await issuance_service.issue_for_order(db, order_id)

    assert len(tickets) == 3
    assert sorted(t.sequence for t in tickets) == [1, 2, 3]
    assert len({t.qr_id for t in tickets}) == 3
    assert all(len(t.qr_id) == 64 for t in tickets)


async def test_reissuing_does_not_create_duplicates(db, catalog, issuance_service):
    order_id = await paid_order(db, catalog, quantity=3)

    await issuance_service.issue_for_order(db, order_id)
    again = await issuance_service.issue_for_order(db, order_id)

    assert again == []
    assert len(await TicketIssuanceService.get_tickets_for_order(db, order_id)) == 3


async def test_completes_a_partial_issuance(db, catalog, issuance_service):
    order_id = await paid_order(db, catalog, quantity=3)
    items = await OrderService().get_items(db, order_id)
    db.add(Ticket(id=uuid.uuid4(), order_item_id=items[0].id, sequence=2, qr_id="a" * 64, issued_at=utcnow()))
    await db.commit()

    created = await issuance_service.issue_for_order(db, order_id)

    assert sorted(t.sequence for t in created) == [1, 3]
    assert len(await TicketIssuanceService.get_tickets_for_order(db, order_id)) == 3


async def test_more_tickets_than_quantity_is_an_invariant_violation(db, catalog, issuance_service):
    order_id = await paid_order(db, catalog, quantity=1)
    items = await OrderService().get_items(db, order_id)
    for sequence in (1, 2):
        db.add(Ticket(
            id=uuid.uuid4(), order_item_id=items[0].id, sequence=sequence, qr_id=f"{sequence}" * 64,
            issued_at=utcnow(),
        ))
    await db.commit()

    with pytest.raises(InvariantViolation):
        await issuance_service.issue_for_order(db, order_id)


async def test_only_paid_orders_get_tickets(db, catalog, issuance_service):
    order = await OrderService().create(
        db, catalog.user.id, [OrderLine(ref=InventoryRef(category_id=catalog.general.id), quantity=1)]
    )

    with pytest.raises(InvalidStateTransition):
        await issuance_service.issue_for_order(db, order.id)
    with pytest.raises(OrderNotFound):
        await issuance_service.issue_for_order(db, uuid.uuid4())


async def test_assets_are_written_to_disk(db, catalog, issuance_service, asset_store):
    order_id = await paid_order(db, catalog, quantity=1, seat=catalog.seats[0])

    tickets = await issuance_service.issue_for_order(db, order_id)

    assert len(tickets) == 2
    for ticket in tickets:
        assert ticket.qr_code_url == f"/tickets/{ticket.id}.png"
        assert ticket.pdf_url == f"/tickets/{ticket.id}.pdf"
        pdf = Path(asset_store.base_dir) / f"{ticket.id}.pdf"
        assert pdf.read_bytes().startswith(b"%PDF")


async def test_asset_failure_is_reported_and_retryable(db, catalog, asset_store):
    failures = []
    order_id = await paid_order(db, catalog, quantity=2)

    tickets = await TicketIssuanceService(asset_store=FailingAssetStore()).issue_for_order(
        db, order_id, on_asset_error=failures.append
    )

    assert len(tickets) == 2
    assert {f.ticket_id for f in failures} == {str(t.id) for t in tickets}
    assert all(t.pdf_url is None for t in tickets)

    # Reintento con un store sano: el ticket ya emitido recibe sus assets
    regenerated = await TicketIssuanceService(asset_store=asset_store).generate_assets(db, tickets[0].id)
    assert regenerated.pdf_url == f"/tickets/{tickets[0].id}.pdf"


async def test_reissuing_completes_pending_assets(db, catalog, asset_store):
    order_id = await paid_order(db, catalog, quantity=2)
    await TicketIssuanceService(asset_store=FailingAssetStore()).issue_for_order(db, order_id)

    created = await TicketIssuanceService(asset_store=asset_store).issue_for_order(db, order_id)

    assert created == []
    tickets = await TicketIssuanceService.get_tickets_for_order(db, order_id)
    assert len(tickets) == 2
    for ticket in tickets:
        assert ticket.pdf_url == f"/tickets/{ticket.id}.pdf"
        assert ticket.qr_code_url == f"/tickets/{ticket.id}.png"


async def test_wallet_pass_hook_is_optional(db, catalog, asset_store):
    asset_store.wallet_pass_builder = lambda view: f"https://wallet.test/{view.ticket_id}"
    order_id = await paid_order(db, catalog, quantity=1)

    tickets = await TicketIssuanceService(asset_store=asset_store).issue_for_order(db, order_id)

    assert tickets[0].wallet_pass_url == f"https://wallet.test/{tickets[0].id}"


async def test_wallet_pass_failure_does_not_block_issuance(db, catalog, asset_store):
    def broken_wallet(view):
        raise RuntimeError("servicio de wallet caído")

    asset_store.wallet_pass_builder = broken_wallet
    order_id = await paid_order(db, catalog, quantity=1)

    tickets = await TicketIssuanceService(asset_store=asset_store).issue_for_order(db, order_id)

    assert tickets[0].pdf_url is not None
    assert tickets[0].wallet_pass_url is None


async def test_generate_assets_for_unknown_ticket(db, catalog, issuance_service):
    with pytest.raises(TicketNotFound):
        await issuance_service.generate_assets(db, uuid.uuid4())
