"""Ledger de inventario: retención, liberación y venta"""
import uuid

import pytest
from sqlalchemy import select

from shared.database.models import CapacityLog, Seat, SeatStatus, TicketCategory
from shared.exceptions import InsufficientInventory, InvariantViolation
from services.ticket_purchase.services.inventory_service import InventoryRef, InventoryService


async def reload_seat(db, seat_id) -> Seat:
    return await db.get(Seat, seat_id, populate_existing=True)


async def reload_category(db, category_id) -> TicketCategory:
    return await db.get(TicketCategory, category_id, populate_existing=True)


def test_inventory_ref_requires_exactly_one_reference():
    with pytest.raises(ValueError):
        InventoryRef()
    with pytest.raises(ValueError):
        InventoryRef(seat_id=uuid.uuid4(), category_id=uuid.uuid4())

    seat_id = uuid.uuid4()
    assert str(InventoryRef(seat_id=seat_id)) == f"seat:{seat_id}"


async def test_hold_seat_marks_it_held_by_order(db, catalog):
    seat = catalog.seats[0]
    order_id = uuid.uuid4()

    hold = await InventoryService.hold(db, InventoryRef(seat_id=seat.id), catalog.user.id, order_id)
    await db.commit()

    assert hold.category_id == catalog.platea.id
    assert hold.unit_price == catalog.platea.price
    seat = await reload_seat(db, seat.id)
    assert seat.status == SeatStatus.HELD.value
    assert seat.held_by_order_id == order_id


async def test_seat_cannot_be_held_twice(db, catalog):
    ref = InventoryRef(seat_id=catalog.seats[0].id)
    await InventoryService.hold(db, ref, catalog.user.id, uuid.uuid4())
    await db.commit()

    with pytest.raises(InsufficientInventory) as exc_info:
        await InventoryService.hold(db, ref, catalog.other_user.id, uuid.uuid4())
    assert exc_info.value.unavailable == [str(ref)]


async def test_seat_hold_only_accepts_quantity_one(db, catalog):
    with pytest.raises(ValueError):
        await InventoryService.hold(db, InventoryRef(seat_id=catalog.seats[0].id), catalog.user.id, uuid.uuid4(), 2)


async def test_category_hold_moves_available_to_held(db, catalog):
    order_id = uuid.uuid4()
    await InventoryService.hold(db, InventoryRef(category_id=catalog.general.id), catalog.user.id, order_id, 4)
    await db.commit()

    category = await reload_category(db, catalog.general.id)
    assert category.capacity_available == 6
    assert category.capacity_held == 4
    assert category.capacity_total == category.capacity_available + category.capacity_held + category.capacity_sold


async def test_category_hold_over_capacity_is_rejected(db, catalog):
    ref = InventoryRef(category_id=catalog.general.id)
    with pytest.raises(InsufficientInventory):
        await InventoryService.hold(db, ref, catalog.user.id, uuid.uuid4(), 11)

    category = await reload_category(db, catalog.general.id)
    assert category.capacity_available == 10


async def test_release_is_idempotent(db, catalog):
    order_id = uuid.uuid4()
    ref = InventoryRef(category_id=catalog.general.id)
    await InventoryService.hold(db, ref, catalog.user.id, order_id, 3)

    assert await InventoryService.release(db, ref, 3, order_id) is True
    assert await InventoryService.release(db, ref, 3, order_id) is False
    await db.commit()

    category = await reload_category(db, catalog.general.id)
    assert category.capacity_available == 10
    assert category.capacity_held == 0

    reasons = (await db.execute(
        select(CapacityLog.reason).where(CapacityLog.order_id == order_id).order_by(CapacityLog.created_at)
    )).scalars().all()
    assert sorted(reasons) == ["hold", "release"]


async def test_release_of_seat_held_by_another_order_is_a_noop(db, catalog):
    seat = catalog.seats[0]
    ref = InventoryRef(seat_id=seat.id)
    holder = uuid.uuid4()
    await InventoryService.hold(db, ref, catalog.user.id, holder)

    assert await InventoryService.release(db, ref, 1, uuid.uuid4()) is False
    await db.commit()

    seat = await reload_seat(db, seat.id)
    assert seat.status == SeatStatus.HELD.value
    assert seat.held_by_order_id == holder


async def test_commit_sale_moves_held_to_sold(db, catalog):
    order_id = uuid.uuid4()
    seat_ref = InventoryRef(seat_id=catalog.seats[1].id)
    general_ref = InventoryRef(category_id=catalog.general.id)
    await InventoryService.hold(db, seat_ref, catalog.user.id, order_id)
    await InventoryService.hold(db, general_ref, catalog.user.id, order_id, 2)

    await InventoryService.commit_sale(db, seat_ref, 1, order_id)
    await InventoryService.commit_sale(db, general_ref, 2, order_id)
    await db.commit()

    seat = await reload_seat(db, catalog.seats[1].id)
    category = await reload_category(db, catalog.general.id)
    assert seat.status == SeatStatus.SOLD.value
    assert (category.capacity_available, category.capacity_held, category.capacity_sold) == (8, 0, 2)


async def test_commit_sale_on_unheld_seat_is_an_invariant_violation(db, catalog):
    with pytest.raises(InvariantViolation) as exc_info:
        await InventoryService.commit_sale(db, InventoryRef(seat_id=catalog.seats[2].id), 1, uuid.uuid4())
    assert exc_info.value.context["seat_status"] == SeatStatus.AVAILABLE.value


async def test_commit_sale_after_release_is_an_invariant_violation(db, catalog):
    order_id = uuid.uuid4()
    ref = InventoryRef(category_id=catalog.general.id)
    await InventoryService.hold(db, ref, catalog.user.id, order_id, 1)
    await InventoryService.release(db, ref, 1, order_id)

    with pytest.raises(InvariantViolation):
        await InventoryService.commit_sale(db, ref, 1, order_id)
