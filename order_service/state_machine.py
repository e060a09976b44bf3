"""
Order lifecycle state machine.

The transition table and the role grants are plain data; `decide()` is a
pure function of (current status, requested status, role). The engine
wraps it with the per-order critical section, the conditional store write
and the side effects that follow a committed transition.
"""

import asyncio
import logging
from collections import defaultdict
from decimal import Decimal
from contextlib import asynccontextmanager
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from order_service import metrics
from order_service.errors import InvalidTransition, Unauthorized, TransientStoreError
from order_service.events import Audience, EventBus, ORDER_UPDATE, ORDER_WITHDRAWN
from order_service.pricing import driver_earnings
from order_service.schemas import Actor, Order, OrderStatus, Role
from order_service.store import OrderStore

logger = logging.getLogger("order-service.engine")

S = OrderStatus

TERMINAL_STATES: FrozenSet[OrderStatus] = frozenset({S.DELIVERED, S.CANCELLED, S.REJECTED})

# Direct successors of each status.
TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.PENDING: frozenset({S.CONFIRMED, S.REJECTED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.PREPARING, S.REJECTED, S.CANCELLED}),
    S.PREPARING: frozenset({S.READY, S.CANCELLED}),
    S.READY: frozenset({S.ASSIGNED, S.CANCELLED}),
    S.ASSIGNED: frozenset({S.PICKED_UP, S.CANCELLED}),
    S.PICKED_UP: frozenset({S.ON_THE_WAY, S.CANCELLED}),
    S.ON_THE_WAY: frozenset({S.DELIVERED, S.CANCELLED}),
    S.DELIVERED: frozenset(),
    S.CANCELLED: frozenset(),
    S.REJECTED: frozenset(),
}

Edge = Tuple[OrderStatus, OrderStatus]

# Which edges each role may request. READY -> ASSIGNED is never requested:
# only the assignment coordinator's compare-and-set enters ASSIGNED.
ROLE_EDGES: Dict[Role, FrozenSet[Edge]] = {
    Role.CUSTOMER: frozenset(
        (current, S.CANCELLED)
        for current in (S.PENDING, S.CONFIRMED, S.PREPARING, S.READY, S.ASSIGNED)
    ),
    Role.RESTAURANT: frozenset({
        (S.PENDING, S.CONFIRMED),
        (S.PENDING, S.REJECTED),
        (S.CONFIRMED, S.REJECTED),
        (S.CONFIRMED, S.PREPARING),
        (S.PREPARING, S.READY),
    }),
    Role.DRIVER: frozenset({
        (S.ASSIGNED, S.PICKED_UP),
        (S.PICKED_UP, S.ON_THE_WAY),
        (S.ON_THE_WAY, S.DELIVERED),
    }),
    Role.ADMIN: frozenset(
        (current, target)
        for current, targets in TRANSITIONS.items()
        for target in targets
        if target != S.ASSIGNED
    ),
}

ROLE_TARGETS: Dict[Role, FrozenSet[OrderStatus]] = {
    role: frozenset(target for _, target in edges) for role, edges in ROLE_EDGES.items()
}


class Decision(str, Enum):
    ALLOW = "allow"
    NOOP = "noop"
    INVALID = "invalid"
    UNAUTHORIZED = "unauthorized"


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATES


def decide(current: OrderStatus, target: OrderStatus, role: Role) -> Decision:
    if is_terminal(current) and target != current:
        return Decision.INVALID
    if target not in ROLE_TARGETS[role]:
        return Decision.UNAUTHORIZED
    if target == current:
        return Decision.NOOP
    if target not in TRANSITIONS[current]:
        return Decision.INVALID
    if (current, target) not in ROLE_EDGES[role]:
        return Decision.UNAUTHORIZED
    return Decision.ALLOW


def check_ownership(order: Order, actor: Actor):
    """Raise Unauthorized unless the actor is a party to this order."""
    if actor.role == Role.ADMIN:
        return
    if actor.role == Role.CUSTOMER and actor.user_id == order.customer_id:
        return
    if actor.role == Role.RESTAURANT and actor.restaurant_id and actor.restaurant_id == order.restaurant_id:
        return
    if actor.role == Role.DRIVER and order.driver_id and actor.user_id == order.driver_id:
        return
    raise Unauthorized(f"{actor.role.value} {actor.user_id} is not a party to order {order.id}")


class OrderLocks:
    """Logical mutex per order id; entries disappear once nobody holds or waits."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, order_id: str):
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        self._users[order_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[order_id] -= 1
            if self._users[order_id] == 0:
                self._users.pop(order_id, None)
                self._locks.pop(order_id, None)

    def __len__(self):
        return len(self._locks)


class StateMachine:
    """Single authority for applying status changes to orders."""

    MAX_STALE_RETRIES = 3

    def __init__(
        self,
        store: OrderStore,
        bus: EventBus,
        coordinator=None,
        payments=None,
        ledger=None,
        locks: OrderLocks = None,
    ):
        self.store = store
        self.bus = bus
        self.coordinator = coordinator
        self.payments = payments
        self.ledger = ledger
        self.locks = locks or OrderLocks()

    async def request_transition(
        self,
        order_id: str,
        actor: Actor,
        target: OrderStatus,
        note: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> Order:
        try:
            target = OrderStatus(target)
        except ValueError:
            raise InvalidTransition(f"unknown status {target!r}")

        async with self.locks.hold(order_id):
            for attempt in range(1, self.MAX_STALE_RETRIES + 1):
                order = await self.store.get(order_id)
                current = order.status
                try:
                    check_ownership(order, actor)
                except Unauthorized:
                    metrics.TRANSITIONS_REJECTED.labels(reason="unauthorized").inc()
                    raise

                decision = decide(current, target, actor.role)
                if decision == Decision.NOOP:
                    logger.info(f"[TRACE {trace_id}] Order {order_id} already {current.value}, nothing to do")
                    return order
                if decision == Decision.UNAUTHORIZED:
                    metrics.TRANSITIONS_REJECTED.labels(reason="unauthorized").inc()
                    raise Unauthorized(f"{actor.role.value} may not move order from {current.value} to {target.value}")
                if decision == Decision.INVALID:
                    metrics.TRANSITIONS_REJECTED.labels(reason="invalid").inc()
                    raise InvalidTransition(f"cannot move order from {current.value} to {target.value}")

                release_driver, earnings = self._driver_release(order, target)
                updated = await self.store.apply_transition(
                    order_id,
                    current,
                    target,
                    note=note or f"Status updated to {target.value} by {actor.role.value}",
                    release_driver=release_driver,
                    earnings=earnings,
                )
                if updated is not None:
                    break
                logger.warning(
                    f"[TRACE {trace_id}] Order {order_id} moved during transition "
                    f"(attempt {attempt}/{self.MAX_STALE_RETRIES}), reloading"
                )
            else:
                raise TransientStoreError(f"order {order_id} kept changing, retry")

        metrics.TRANSITIONS_APPLIED.labels(status=target.value).inc()
        logger.info(f"[TRACE {trace_id}] ✅ Order {order_id} {current.value} → {target.value} by {actor.role.value} {actor.user_id}")

        self.bus.publish(
            ORDER_UPDATE,
            updated,
            Audience.for_order(updated),
            trace_id=trace_id,
            from_status=current.value,
        )
        await self._after_transition(order, updated, earnings, trace_id)
        return updated

    @staticmethod
    def _driver_release(order: Order, target: OrderStatus):
        if not order.driver_id:
            return None, None
        if target == S.DELIVERED:
            return order.driver_id, driver_earnings(order.delivery_fee)
        if target in (S.CANCELLED, S.REJECTED):
            return order.driver_id, None
        return None, None

    async def _after_transition(self, before: Order, order: Order, earnings: Optional[Decimal], trace_id: Optional[str]):
        """Side effects of a committed transition. None of them can undo it."""
        target = order.status

        if target == S.READY and self.coordinator is not None:
            try:
                await self.coordinator.broadcast_to_pool(order, trace_id=trace_id)
            except Exception as e:
                logger.error(f"[TRACE {trace_id}] Pool broadcast failed for {order.id}: {e!r}")

        elif target == S.DELIVERED and self.ledger is not None and order.driver_id:
            try:
                await self.ledger.settle(order, earnings)
            except Exception as e:
                logger.error(f"[TRACE {trace_id}] Earnings settlement failed for {order.id}: {e!r}")

        elif target in (S.CANCELLED, S.REJECTED):
            if before.status in (S.READY, S.ASSIGNED):
                await self._withdraw_from_pool(order, trace_id)
            if self.payments is not None and order.payment.get("status") == "completed":
                try:
                    await self.payments.refund(order)
                except Exception as e:
                    logger.error(f"[TRACE {trace_id}] Refund request failed for {order.id}: {e!r}")

    async def _withdraw_from_pool(self, order: Order, trace_id: Optional[str]):
        try:
            pool = await self.store.pool(order.id)
        except TransientStoreError as e:
            logger.warning(f"[TRACE {trace_id}] Could not load pool for {order.id}: {e}")
            return
        others = [d for d in pool if d != order.driver_id]
        if others:
            self.bus.publish(ORDER_WITHDRAWN, order, Audience(users=others), trace_id=trace_id, reason=order.status.value)
