from typing import Callable, List, Optional
import logging

from order_service import metrics
from order_service.errors import AssignmentConflict, TransientStoreError, Unauthorized
from order_service.events import (
    Audience, EventBus, ORDER_AVAILABLE, ORDER_ASSIGNED, ORDER_WITHDRAWN, restaurant_group,
)
from order_service.pricing import driver_earnings
from order_service.schemas import DriverAvailability, Order, OrderStatus
from order_service.store import OrderStore, DriverStore

logger = logging.getLogger("order-service.assignment")

# (order, candidates) -> candidates worth offering the order to
ProximityFilter = Callable[[Order, List[DriverAvailability]], List[DriverAvailability]]


def accept_all(order: Order, candidates: List[DriverAvailability]) -> List[DriverAvailability]:
    return candidates


def pool_offer(order: Order) -> dict:
    """What a driver needs to decide on an offer."""
    return {
        "restaurant_id": order.restaurant_id,
        "pickup_location": order.pickup_location.model_dump() if order.pickup_location else None,
        "delivery_address": order.delivery_address.model_dump(),
        "estimated_earnings": float(driver_earnings(order.delivery_fee)),
    }


class AssignmentCoordinator:
    def __init__(
        self,
        orders: OrderStore,
        drivers: DriverStore,
        bus: EventBus,
        proximity_filter: ProximityFilter = accept_all,
    ):
        self.orders = orders
        self.drivers = drivers
        self.bus = bus
        self.proximity_filter = proximity_filter

    async def broadcast_to_pool(self, order: Order, trace_id: Optional[str] = None) -> List[str]:
        """
        Offer a ready order to every eligible driver.
        Returns the driver ids the order was offered to.
        """
        candidates = await self.drivers.eligible()
        eligible = [d.id for d in self.proximity_filter(order, candidates)]

        if not eligible:
            metrics.POOL_BROADCASTS.labels(outcome="empty").inc()
            logger.warning(f"[TRACE {trace_id}] [Pool] ❌ No eligible drivers for order {order.id}")
            return []

        await self.orders.add_to_pool(order.id, eligible)
        self.bus.publish(
            ORDER_AVAILABLE,
            order,
            Audience(users=eligible),
            trace_id=trace_id,
            data=pool_offer(order),
        )
        metrics.POOL_BROADCASTS.labels(outcome="offered").inc()
        logger.info(f"[TRACE {trace_id}] [Pool] Order {order.id} offered to {len(eligible)} drivers")
        return eligible

    async def accept_assignment(self, order_id: str, driver_id: str, trace_id: Optional[str] = None) -> Order:
        driver = await self.drivers.get(driver_id)
        if not driver.is_online:
            raise Unauthorized("driver must be online to accept orders")
        if not driver.is_verified:
            raise Unauthorized("driver account not verified")

        current = await self.orders.get(order_id)
        if current.driver_id == driver_id and current.status == OrderStatus.ASSIGNED:
            # retried accept from the winner
            return current

        try:
            order = await self.orders.claim_for_driver(order_id, driver_id)
        except AssignmentConflict as e:
            metrics.ASSIGNMENT_CONFLICTS.inc()
            logger.info(f"[TRACE {trace_id}] [Assign] Driver {driver_id} lost order {order_id}: {e.reason}")
            raise

        logger.info(f"[TRACE {trace_id}] [Assign] 🚗 Driver {driver_id} → Order {order_id}")

        self.bus.publish(
            ORDER_ASSIGNED,
            order,
            Audience(users=(order.customer_id, driver_id), groups=(restaurant_group(order.restaurant_id),)),
            trace_id=trace_id,
            driver_id=driver_id,
        )
        try:
            pool = await self.orders.pool(order_id)
        except TransientStoreError as e:
            logger.warning(f"[TRACE {trace_id}] [Assign] Could not load pool for {order_id}, skipping withdrawal: {e}")
            return order
        others = [d for d in pool if d != driver_id]
        if others:
            self.bus.publish(
                ORDER_WITHDRAWN,
                order,
                Audience(users=others),
                trace_id=trace_id,
                data={},
                reason="assigned",
            )
        return order

    async def decline_offer(self, order_id: str, driver_id: str, trace_id: Optional[str] = None) -> Order:
        """
        A driver passes on an open offer. The order stays ready for everyone
        else; this driver stops hearing about it and is not offered it again.
        """
        await self.drivers.get(driver_id)
        order = await self.orders.get(order_id)
        if order.status != OrderStatus.READY or order.driver_id:
            raise AssignmentConflict()

        await self.orders.decline(order_id, driver_id)
        logger.info(f"[TRACE {trace_id}] [Pool] Driver {driver_id} declined order {order_id}")

        self.bus.publish(
            ORDER_WITHDRAWN,
            order,
            Audience.user(driver_id),
            trace_id=trace_id,
            data={},
            reason="declined",
        )
        return order

    async def available_orders(self, driver_id: str) -> List[Order]:
        """Ready, unassigned orders for a driver who came online late or reconnected."""
        driver = await self.drivers.get(driver_id)
        if not driver.is_online:
            raise Unauthorized("driver must be online to receive orders")
        if not driver.is_verified:
            raise Unauthorized("driver account not verified")

        candidates = [
            o for o in await self.orders.list_available(for_driver=driver_id) if self.proximity_filter(o, [driver])
        ]
        for order in candidates:
            await self.orders.add_to_pool(order.id, [driver_id])
        return candidates
