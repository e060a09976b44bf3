"""
Entry points the request-handling layer calls.

`OrderService` owns one instance of every core component. Build one per
app (or per test) with an explicit database; nothing here is module-level
state.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from databases import Database

from order_service import config, pricing
from order_service.assignment import AssignmentCoordinator, ProximityFilter, accept_all
from order_service.errors import NotRateable, PaymentRequired, Unauthorized
from order_service.events import Audience, EventBus, ORDER_NEW, DRIVER_LOCATION, restaurant_group
from order_service.schemas import (
    Actor, Address, DriverAvailability, LineItemIn, Location, Order, OrderStatus,
    PaymentConfirmation, Rating, Role,
)
from order_service.state_machine import StateMachine
from order_service.store import OrderStore, DriverStore
from order_service.ws_manager import SessionRegistry, Session

logger = logging.getLogger("order-service.service")

PAYMENT_SUCCESS = ("succeeded", "completed", "paid")
ACTIVE_DELIVERY = (OrderStatus.ASSIGNED, OrderStatus.PICKED_UP, OrderStatus.ON_THE_WAY)


class OrderService:
    def __init__(
        self,
        database: Database,
        registry: SessionRegistry = None,
        payments=None,
        ledger=None,
        proximity_filter: ProximityFilter = accept_all,
        relay_to_queues: bool = None,
    ):
        self.database = database
        self.registry = registry or SessionRegistry()
        self.bus = EventBus(
            self.registry,
            relay_to_queues=config.USE_AWS if relay_to_queues is None else relay_to_queues,
        )
        self.orders = OrderStore(database)
        self.drivers = DriverStore(database)
        self.coordinator = AssignmentCoordinator(self.orders, self.drivers, self.bus, proximity_filter)
        self.engine = StateMachine(self.orders, self.bus, self.coordinator, payments=payments, ledger=ledger)

    # ------------------------- ORDERS -------------------------
    async def create_order(
        self,
        customer_id: str,
        restaurant_id: str,
        items: List[LineItemIn],
        delivery_address: Address,
        payment: PaymentConfirmation,
        pickup_location: Optional[Location] = None,
        delivery_fee: Optional[Decimal] = None,
        coupons: Optional[List[str]] = None,
        special_instructions: Optional[str] = None,
        preparation_minutes: Optional[int] = None,
        trace_id: Optional[str] = None,
    ) -> Order:
        if payment.method == "cash":
            payment_status = "pending"
        elif payment.status.lower() in PAYMENT_SUCCESS:
            payment_status = "completed"
        else:
            raise PaymentRequired(f"payment reported {payment.status!r}")

        lines = pricing.line_items(items)
        subtotal = pricing.subtotal(lines)
        fee = pricing.money(config.DEFAULT_DELIVERY_FEE if delivery_fee is None else delivery_fee)
        tax = pricing.tax(subtotal)
        discount = pricing.discount(subtotal, coupons)

        order = await self.orders.insert(
            {
                "id": pricing.new_order_id(),
                "customer_id": customer_id,
                "restaurant_id": restaurant_id,
                "driver_id": None,
                # amounts kept as strings inside the JSON column so they reload exactly
                "items": [
                    {**line.model_dump(), "unit_price": str(line.unit_price), "subtotal": str(line.subtotal)}
                    for line in lines
                ],
                "subtotal": subtotal,
                "delivery_fee": fee,
                "tax": tax,
                "discount": discount,
                "final_amount": pricing.final_amount(subtotal, fee, tax, discount),
                "status": OrderStatus.PENDING.value,
                "delivery_address": delivery_address.model_dump(),
                "pickup_location": pickup_location.model_dump() if pickup_location else None,
                "payment": {
                    "method": payment.method,
                    "status": payment_status,
                    "transaction_id": payment.transaction_id,
                },
                "coupons": list(coupons or []),
                "special_instructions": special_instructions,
                "preparation_minutes": (
                    config.DEFAULT_PREPARATION_MINUTES if preparation_minutes is None else preparation_minutes
                ),
                "delivery_minutes": config.DEFAULT_DELIVERY_MINUTES,
            },
            note="Order placed",
        )
        logger.info(f"[TRACE {trace_id}] ✅ Order {order.id} created by {customer_id} total={order.final_amount}")

        self.bus.publish(
            ORDER_NEW,
            order,
            Audience(users=(customer_id,), groups=(restaurant_group(restaurant_id),)),
            trace_id=trace_id,
        )
        return order

    async def get_order(self, order_id: str) -> Order:
        return await self.orders.get(order_id)

    async def request_transition(
        self,
        order_id: str,
        actor: Actor,
        target: OrderStatus,
        note: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> Order:
        return await self.engine.request_transition(order_id, actor, target, note=note, trace_id=trace_id)

    async def accept_assignment(self, order_id: str, driver_id: str, trace_id: Optional[str] = None) -> Order:
        return await self.coordinator.accept_assignment(order_id, driver_id, trace_id=trace_id)

    async def decline_offer(self, order_id: str, driver_id: str, trace_id: Optional[str] = None) -> Order:
        return await self.coordinator.decline_offer(order_id, driver_id, trace_id=trace_id)

    async def rate_order(self, order_id: str, actor: Actor, rating: Rating) -> Order:
        order = await self.orders.get(order_id)
        if actor.role != Role.CUSTOMER or actor.user_id != order.customer_id:
            raise Unauthorized("only the ordering customer can rate an order")
        if order.status != OrderStatus.DELIVERED:
            raise NotRateable()
        return await self.orders.set_rating(order_id, rating.model_dump(exclude_none=True))

    # ------------------------- DRIVERS -------------------------
    async def upsert_driver(self, driver_id: str, is_verified: bool = True) -> DriverAvailability:
        return await self.drivers.upsert(driver_id, is_verified=is_verified)

    async def set_driver_online(self, driver_id: str, is_online: bool) -> DriverAvailability:
        driver = await self.drivers.set_online(driver_id, is_online)
        logger.info(f"[Driver] {driver_id} is now {'online' if is_online else 'offline'}")
        return driver

    async def update_driver_location(
        self, driver_id: str, lat: float, lng: float, trace_id: Optional[str] = None
    ) -> DriverAvailability:
        driver = await self.drivers.set_location(driver_id, lat, lng)
        if not driver.current_order_id:
            return driver

        order = await self.orders.find(driver.current_order_id)
        if order is None or order.status not in ACTIVE_DELIVERY or order.driver_id != driver_id:
            return driver

        self.bus.publish(
            DRIVER_LOCATION,
            order,
            Audience.for_order(order),
            trace_id=trace_id,
            data={
                "driver_id": driver_id,
                "location": {"lat": lat, "lng": lng},
                "timestamp": (driver.last_location_at or datetime.utcnow()).isoformat(),
            },
        )
        return driver

    async def available_orders(self, driver_id: str) -> List[Order]:
        return await self.coordinator.available_orders(driver_id)

    # ------------------------- SESSIONS -------------------------
    def register_session(
        self,
        connection_id: str,
        user_id: str,
        role: str,
        restaurant_id: Optional[str] = None,
        groups: Iterable[str] = (),
        channel=None,
    ) -> Session:
        return self.registry.register(
            connection_id, user_id, role, groups=groups, restaurant_id=restaurant_id, channel=channel
        )

    def unregister_session(self, connection_id: str) -> Optional[Session]:
        return self.registry.unregister(connection_id)

    async def close(self):
        await self.bus.drain()
