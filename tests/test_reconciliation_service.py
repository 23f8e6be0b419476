"""Motor de reconciliación: eventos de pago aplicados sobre órdenes"""
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select

from shared.database.models import Order, OrderStatus, Payment, PaymentStatus, Seat, SeatStatus, TicketCategory
from shared.utils.clock import utcnow
from services.ticket_purchase.services.inventory_service import InventoryRef
from services.ticket_purchase.services.order_service import OrderLine, OrderService
from services.ticket_purchase.services.payment_gateway import NormalizedStatus
from services.ticket_purchase.services.reconciliation_service import ReconciliationService
from services.ticket_purchase.services.ticket_issuance_service import TicketIssuanceService

from factories import FailingAssetStore, RetryRecorder, payment_event


async def create_general_order(db, catalog, quantity=2):
    line = OrderLine(ref=InventoryRef(category_id=catalog.general.id), quantity=quantity)
    order = await OrderService().create(db, catalog.user.id, [line])
    return order.id


async def create_seat_order(db, catalog, seat, hold_minutes=None):
    order = await OrderService().create(db, catalog.user.id, [OrderLine(ref=InventoryRef(seat_id=seat.id))], hold_minutes)
    return order.id


async def payments_of(db, order_id):
    result = await db.execute(select(Payment).where(Payment.order_id == order_id).execution_options(populate_existing=True))
    return result.scalars().all()


async def test_general_admission_purchase_end_to_end(db, catalog, reconciliation):
    order_id = await create_general_order(db, catalog, quantity=2)
    order = await db.get(Order, order_id)
    assert order.total == Decimal("200.00")

    outcome = await reconciliation.reconcile(db, payment_event(order_id, NormalizedStatus.APPROVED))

    assert outcome.action == "transitioned"
    assert outcome.order_status == OrderStatus.PAID.value
    assert outcome.tickets_issued == 2

    order = await db.get(Order, order_id, populate_existing=True)
    assert order.status == OrderStatus.PAID.value
    assert order.payment_provider == "PAGOTIC"
    assert order.payment_number == "pt-1"

    payments = await payments_of(db, order_id)
    assert [p.status for p in payments] == [PaymentStatus.APPROVED.value]
    assert payments[0].raw_response == {"id": "pt-1", "status": "approved"}

    tickets = await TicketIssuanceService.get_tickets_for_order(db, order_id)
    assert len(tickets) == 2
    assert len({t.qr_id for t in tickets}) == 2
    assert all(t.qr_code_url and t.pdf_url for t in tickets)

    category = await db.get(TicketCategory, catalog.general.id, populate_existing=True)
    assert (category.capacity_available, category.capacity_held, category.capacity_sold) == (8, 0, 2)


async def test_duplicate_approved_event_has_no_extra_effects(db, catalog, reconciliation):
    order_id = await create_general_order(db, catalog, quantity=2)
    event = payment_event(order_id, NormalizedStatus.APPROVED)

    first = await reconciliation.reconcile(db, event)
    second = await reconciliation.reconcile(db, event)

    assert first.action == "transitioned"
    assert second.action == "terminal"
    assert second.acknowledged is True
    assert second.tickets_issued == 0
    assert len(await TicketIssuanceService.get_tickets_for_order(db, order_id)) == 2
    assert len(await payments_of(db, order_id)) == 1

    category = await db.get(TicketCategory, catalog.general.id, populate_existing=True)
    assert category.capacity_sold == 2


async def test_order_found_by_payment_number(db, catalog, reconciliation):
    order_id = await create_general_order(db, catalog, quantity=1)
    order = await db.get(Order, order_id)
    order.payment_provider = "STRIPE"
    order.payment_number = "pi_abc"
    await db.commit()

    event = payment_event("desconocida", NormalizedStatus.APPROVED, provider="STRIPE", payment_id="pi_abc")
    outcome = await reconciliation.reconcile(db, event)

    assert outcome.action == "transitioned"
    assert outcome.order_id == str(order_id)


async def test_cancelled_payment_releases_inventory(db, catalog, reconciliation):
    seat_id = catalog.seats[0].id
    order_id = await create_seat_order(db, catalog, catalog.seats[0])

    outcome = await reconciliation.reconcile(
        db, payment_event(order_id, NormalizedStatus.CANCELLED, original="rejected")
    )

    assert outcome.action == "transitioned"
    assert outcome.order_status == OrderStatus.CANCELLED.value
    seat = await db.get(Seat, seat_id, populate_existing=True)
    assert seat.status == SeatStatus.AVAILABLE.value
    payments = await payments_of(db, order_id)
    assert payments[0].status == PaymentStatus.CANCELLED.value


async def test_pending_event_keeps_order_pending(db, catalog, reconciliation):
    order_id = await create_general_order(db, catalog)

    outcome = await reconciliation.reconcile(db, payment_event(order_id, NormalizedStatus.PENDING))

    assert outcome.action == "noop"
    assert outcome.order_status == OrderStatus.PENDING.value
    payments = await payments_of(db, order_id)
    assert payments[0].status == PaymentStatus.PENDING.value


async def test_pending_event_after_hold_deadline_expires_order(db, catalog, reconciliation):
    order_id = await create_general_order(db, catalog)
    order = await db.get(Order, order_id)
    order.expires_at = utcnow() - timedelta(minutes=1)
    await db.commit()

    outcome = await reconciliation.reconcile(db, payment_event(order_id, NormalizedStatus.PENDING))

    assert outcome.action == "transitioned"
    assert outcome.order_status == OrderStatus.EXPIRED.value


async def test_unknown_status_is_ignored(db, catalog, reconciliation):
    order_id = await create_general_order(db, catalog)

    outcome = await reconciliation.reconcile(
        db, payment_event(order_id, NormalizedStatus.UNKNOWN, original="chargeback")
    )

    assert outcome.action == "ignored"
    order = await db.get(Order, order_id, populate_existing=True)
    assert order.status == OrderStatus.PENDING.value
    assert await payments_of(db, order_id) == []


async def test_unknown_order_is_acknowledged(db, catalog, reconciliation):
    event = payment_event("00000000-0000-0000-0000-000000000000", NormalizedStatus.APPROVED, payment_id="pt-x")

    outcome = await reconciliation.reconcile(db, event)

    assert outcome.action == "not_found"
    assert outcome.acknowledged is True


async def test_late_approval_after_expiry_does_not_resurrect_order(db, catalog, reconciliation):
    seat_id = catalog.seats[0].id
    order_id = await create_seat_order(db, catalog, catalog.seats[0])
    await OrderService().transition_to_expired(db, order_id)

    outcome = await reconciliation.reconcile(db, payment_event(order_id, NormalizedStatus.APPROVED))

    assert outcome.action == "terminal"
    assert outcome.order_status == OrderStatus.EXPIRED.value
    seat = await db.get(Seat, seat_id, populate_existing=True)
    assert seat.status == SeatStatus.AVAILABLE.value
    assert await TicketIssuanceService.get_tickets_for_order(db, order_id) == []


async def test_approval_losing_race_against_sweeper_is_acknowledged(db, catalog, reconciliation, monkeypatch):
    order_id = await create_general_order(db, catalog)
    order_service = reconciliation.order_service
    original = order_service.transition_to_paid

    async def expire_first(session, target_id, context=None, commit=True):
        # El sweeper expira la orden después de que la reconciliación la leyó PENDING
        await OrderService().transition_to_expired(session, target_id)
        return await original(session, target_id, context, commit=commit)

    monkeypatch.setattr(order_service, "transition_to_paid", expire_first)

    outcome = await reconciliation.reconcile(db, payment_event(order_id, NormalizedStatus.APPROVED))

    assert outcome.action == "terminal"
    assert outcome.order_status == OrderStatus.EXPIRED.value
    order = await db.get(Order, order_id, populate_existing=True)
    assert order.status == OrderStatus.EXPIRED.value
    assert await TicketIssuanceService.get_tickets_for_order(db, order_id) == []


async def test_issuance_failure_keeps_payment_and_schedules_retry(db, catalog):
    class BrokenIssuance(TicketIssuanceService):
        async def issue_for_order(self, db, order_id, on_asset_error=None):
            raise RuntimeError("base de tickets caída")

    retries = RetryRecorder()
    reconciliation = ReconciliationService(
        issuance_service=BrokenIssuance(), issuance_retry=retries.issuance, asset_retry=retries.asset
    )
    order_id = await create_general_order(db, catalog)

    outcome = await reconciliation.reconcile(db, payment_event(order_id, NormalizedStatus.APPROVED))

    assert outcome.action == "transitioned"
    assert outcome.tickets_issued == 0
    assert retries.orders == [order_id]
    order = await db.get(Order, order_id, populate_existing=True)
    assert order.status == OrderStatus.PAID.value


async def test_asset_failures_leave_tickets_issued_and_schedule_regeneration(db, catalog):
    retries = RetryRecorder()
    reconciliation = ReconciliationService(
        issuance_service=TicketIssuanceService(asset_store=FailingAssetStore()),
        issuance_retry=retries.issuance,
        asset_retry=retries.asset,
    )
    order_id = await create_general_order(db, catalog, quantity=2)

    outcome = await reconciliation.reconcile(db, payment_event(order_id, NormalizedStatus.APPROVED))

    assert outcome.tickets_issued == 2
    tickets = await TicketIssuanceService.get_tickets_for_order(db, order_id)
    assert [t.pdf_url for t in tickets] == [None, None]
    assert sorted(retries.assets) == sorted(str(t.id) for t in tickets)
    assert retries.orders == []


async def test_tickets_left_without_assets_are_completed_by_a_later_issuance(db, catalog, asset_store):
    def queue_down(error):
        raise ConnectionError("broker caído")

    reconciliation = ReconciliationService(
        issuance_service=TicketIssuanceService(asset_store=FailingAssetStore()),
        issuance_retry=RetryRecorder().issuance,
        asset_retry=queue_down,
    )
    order_id = await create_general_order(db, catalog, quantity=2)
    await reconciliation.reconcile(db, payment_event(order_id, NormalizedStatus.APPROVED))

    # Lo que hace la tarea issue_order_tickets al reintentar
    await TicketIssuanceService(asset_store=asset_store).issue_for_order(db, order_id)

    tickets = await TicketIssuanceService.get_tickets_for_order(db, order_id)
    assert [t.pdf_url for t in tickets] == [f"/tickets/{t.id}.pdf" for t in tickets]


async def test_reported_amount_is_stored_on_the_payment(db, catalog, reconciliation):
    order_id = await create_general_order(db, catalog, quantity=2)

    await reconciliation.reconcile(
        db, payment_event(order_id, NormalizedStatus.APPROVED, amount=Decimal("200.00"))
    )

    [payment] = await payments_of(db, order_id)
    assert payment.amount == Decimal("200.00")


async def test_amount_mismatch_is_logged_and_recorded(db, catalog, reconciliation, caplog):
    order_id = await create_general_order(db, catalog, quantity=2)

    with caplog.at_level("WARNING", logger="services.ticket_purchase.services.reconciliation_service"):
        outcome = await reconciliation.reconcile(
            db, payment_event(order_id, NormalizedStatus.APPROVED, amount=Decimal("150.00"))
        )

    # El pago del proveedor manda: la orden se confirma igual
    assert outcome.order_status == OrderStatus.PAID.value
    [payment] = await payments_of(db, order_id)
    assert payment.amount == Decimal("150.00")
    assert any("informa monto 150.00" in r.getMessage() for r in caplog.records)


async def test_amount_within_tolerance_is_not_reported(db, catalog, reconciliation, caplog):
    order_id = await create_general_order(db, catalog, quantity=2)

    with caplog.at_level("WARNING", logger="services.ticket_purchase.services.reconciliation_service"):
        await reconciliation.reconcile(
            db, payment_event(order_id, NormalizedStatus.APPROVED, amount=Decimal("200.01"))
        )

    assert not any("informa monto" in r.getMessage() for r in caplog.records)
