import asyncio

import pytest

from conftest import RESTAURANT, online_driver, place_order, ready_order
from order_service.errors import AssignmentConflict, NotFound, Unauthorized
from order_service.models import order_driver_pool
from order_service.schemas import OrderStatus as S


async def test_two_drivers_race_for_one_order(service):
    """O1: confirmed, preparing, ready, then D1 and D2 accept at the same time."""
    await online_driver(service, "D1")
    await online_driver(service, "D2")
    order = await ready_order(service)
    assert await service.orders.pool(order.id) == ["D1", "D2"]

    results = await asyncio.gather(
        service.accept_assignment(order.id, "D1"),
        service.accept_assignment(order.id, "D2"),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], AssignmentConflict)
    assert losers[0].reason == "order no longer available"

    stored = await service.get_order(order.id)
    assert stored.status == S.ASSIGNED
    assert stored.driver_id in ("D1", "D2")
    assert stored.driver_id == winners[0].driver_id
    assert stored.assigned_at is not None
    assert [h.status for h in stored.history].count(S.ASSIGNED) == 1


async def test_many_drivers_exactly_one_wins(service):
    driver_ids = [f"drv-{i}" for i in range(8)]
    for driver_id in driver_ids:
        await online_driver(service, driver_id)
    order = await ready_order(service)

    results = await asyncio.gather(
        *[service.accept_assignment(order.id, d) for d in driver_ids],
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    conflicts = [r for r in results if isinstance(r, AssignmentConflict)]
    assert len(winners) == 1
    assert len(conflicts) == len(driver_ids) - 1

    stored = await service.get_order(order.id)
    assert stored.driver_id == winners[0].driver_id

    holding = [d for d in driver_ids if (await service.drivers.get(d)).current_order_id == order.id]
    assert holding == [stored.driver_id]


async def test_driver_holds_one_order_at_a_time(service):
    await online_driver(service, "drv-1")
    first = await ready_order(service)
    second = await ready_order(service)

    await service.accept_assignment(first.id, "drv-1")
    with pytest.raises(AssignmentConflict):
        await service.accept_assignment(second.id, "drv-1")

    untouched = await service.get_order(second.id)
    assert untouched.status == S.READY
    assert untouched.driver_id is None


async def test_winner_can_retry_accept(service):
    await online_driver(service, "drv-1")
    order = await ready_order(service)

    first = await service.accept_assignment(order.id, "drv-1")
    again = await service.accept_assignment(order.id, "drv-1")

    assert again.driver_id == first.driver_id == "drv-1"
    assert len(again.history) == len(first.history)


async def test_order_must_be_ready(service):
    await online_driver(service, "drv-1")
    order = await place_order(service)
    await service.request_transition(order.id, RESTAURANT, S.CONFIRMED)

    with pytest.raises(AssignmentConflict):
        await service.accept_assignment(order.id, "drv-1")

    driver = await service.drivers.get("drv-1")
    assert driver.current_order_id is None


async def test_driver_must_be_online_and_verified(service):
    order = await ready_order(service)

    await service.upsert_driver("drv-off")
    with pytest.raises(Unauthorized):
        await service.accept_assignment(order.id, "drv-off")

    await online_driver(service, "drv-new", verified=False)
    with pytest.raises(Unauthorized):
        await service.accept_assignment(order.id, "drv-new")

    with pytest.raises(NotFound):
        await service.accept_assignment(order.id, "drv-ghost")

    stored = await service.get_order(order.id)
    assert stored.status == S.READY


async def test_ready_without_drivers_keeps_order_open(service):
    order = await ready_order(service)

    assert order.status == S.READY
    assert await service.orders.pool(order.id) == []


async def test_late_driver_sees_available_orders(service):
    order = await ready_order(service)
    await online_driver(service, "drv-late")

    available = await service.available_orders("drv-late")

    assert [o.id for o in available] == [order.id]
    assert await service.orders.pool(order.id) == ["drv-late"]

    # asking twice does not duplicate the offer
    await service.available_orders("drv-late")
    assert await service.orders.pool(order.id) == ["drv-late"]

    await service.accept_assignment(order.id, "drv-late")
    assert await service.available_orders("drv-late") == []


async def test_offline_driver_gets_no_offers(service):
    await ready_order(service)
    await service.upsert_driver("drv-1")

    with pytest.raises(Unauthorized):
        await service.available_orders("drv-1")


async def test_declined_order_stays_open_to_other_drivers(service):
    await online_driver(service, "drv-1")
    await online_driver(service, "drv-2")
    order = await ready_order(service)

    declined = await service.decline_offer(order.id, "drv-1")

    assert declined.status == S.READY
    assert declined.driver_id is None
    assert await service.orders.pool(order.id) == ["drv-2"]
    assert await service.available_orders("drv-1") == []
    assert [o.id for o in await service.available_orders("drv-2")] == [order.id]

    # a later sweep does not put the offer back in front of drv-1
    assert await service.orders.pool(order.id) == ["drv-2"]
    assert await service.available_orders("drv-1") == []

    assigned = await service.accept_assignment(order.id, "drv-2")
    assert assigned.driver_id == "drv-2"


async def test_driver_can_decline_before_being_offered(service):
    order = await ready_order(service)
    await online_driver(service, "drv-late")

    await service.decline_offer(order.id, "drv-late")

    assert await service.available_orders("drv-late") == []
    assert await service.orders.pool(order.id) == []


async def test_only_open_orders_can_be_declined(service):
    await online_driver(service, "drv-1")
    await online_driver(service, "drv-2")
    pending = await place_order(service)
    taken = await ready_order(service)
    await service.accept_assignment(taken.id, "drv-2")

    with pytest.raises(AssignmentConflict):
        await service.decline_offer(pending.id, "drv-1")
    with pytest.raises(AssignmentConflict):
        await service.decline_offer(taken.id, "drv-1")
    with pytest.raises(NotFound):
        await service.decline_offer(taken.id, "drv-ghost")

    assert (await service.get_order(taken.id)).driver_id == "drv-2"


async def test_pool_keeps_one_row_per_driver(service, database):
    order = await ready_order(service)

    await asyncio.gather(
        service.orders.add_to_pool(order.id, ["drv-1"]),
        service.orders.add_to_pool(order.id, ["drv-1", "drv-2"]),
        service.orders.add_to_pool(order.id, ["drv-2", "drv-1"]),
    )
    await service.orders.add_to_pool(order.id, ["drv-1"])

    rows = await database.fetch_all(order_driver_pool.select().where(order_driver_pool.c.order_id == order.id))
    assert sorted(row["driver_id"] for row in rows) == ["drv-1", "drv-2"]
    assert await service.orders.pool(order.id) == ["drv-1", "drv-2"]
