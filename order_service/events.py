# events.py
import asyncio
import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, Iterable, List, Optional, Set

import aioboto3

from order_service import config, metrics
from order_service.ws_manager import SessionRegistry

logger = logging.getLogger("order-service.events")

# ------------------------- EVENT TYPES -------------------------
ORDER_NEW = "order:new"
ORDER_UPDATE = "order:update"
ORDER_AVAILABLE = "order:available"
ORDER_ASSIGNED = "order:assigned"
ORDER_WITHDRAWN = "order:withdrawn"
DRIVER_LOCATION = "driver:location"

# Explicit routing for the optional queue relay
EVENT_TARGETS = {
    ORDER_NEW: ["Notification Service", "Payment Service"],
    ORDER_UPDATE: ["Notification Service", "Driver Service"],
    ORDER_ASSIGNED: ["Notification Service", "Driver Service"],
}

SERVICE_QUEUE_MAP = {
    "Notification Service": config.NOTIFICATION_QUEUE_URL,
    "Driver Service": config.DRIVER_QUEUE_URL,
    "Payment Service": config.PAYMENT_QUEUE_URL,
}


@dataclass(frozen=True)
class Audience:
    """Who should see an event: direct users, named groups, minus exclusions."""

    users: Iterable[str] = ()
    groups: Iterable[str] = ()
    exclude_users: Iterable[str] = ()

    @classmethod
    def user(cls, user_id: str) -> "Audience":
        return cls(users=(user_id,))

    @classmethod
    def for_order(cls, order) -> "Audience":
        """Everyone taking part in the order: customer, restaurant staff, assigned driver."""
        users = [order.customer_id]
        if order.driver_id:
            users.append(order.driver_id)
        return cls(users=tuple(users), groups=(restaurant_group(order.restaurant_id),))

    def resolve(self, registry: SessionRegistry) -> List[str]:
        excluded: Set[str] = set()
        for user_id in self.exclude_users:
            excluded.update(registry.resolve_user(user_id))
        seen: Dict[str, None] = {}
        for user_id in self.users:
            for connection_id in registry.resolve_user(user_id):
                seen.setdefault(connection_id)
        for name in self.groups:
            for connection_id in registry.resolve_group(name):
                seen.setdefault(connection_id)
        return [c for c in seen if c not in excluded]


def restaurant_group(restaurant_id: str) -> str:
    return f"restaurant:{restaurant_id}"


def order_summary(order) -> Dict[str, Any]:
    return order.model_dump(mode="json")


@dataclass
class EventBus:
    """
    Fire-and-forget delivery of order events to live sessions.

    publish() only queues the event and returns. Each connection has its
    own outbox drained by one task, so a connection sees events in publish
    order even when a send is slow. A recipient that is gone simply misses
    the push and reconciles by re-reading the order.
    """

    registry: SessionRegistry
    relay_to_queues: bool = field(default_factory=lambda: config.USE_AWS)
    _outboxes: Dict[str, Deque[Dict[str, Any]]] = field(default_factory=dict, init=False, repr=False)
    _tasks: Set[asyncio.Task] = field(default_factory=set, init=False, repr=False)

    def publish(
        self,
        event_type: str,
        order,
        audience: Audience,
        trace_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        **extra,
    ) -> Dict[str, Any]:
        payload = {
            "order_id": order.id,
            "status": order.status.value,
            **(data if data is not None else {"order": order_summary(order)}),
            **extra,
        }
        event = {
            "type": event_type,
            "event_id": str(uuid.uuid4()),
            "data": payload,
            "trace_id": trace_id,
            "timestamp": datetime.utcnow().isoformat(),
        }
        recipients = audience.resolve(self.registry)
        for connection_id in recipients:
            self._enqueue(connection_id, event)
        logger.info(f"[EVENT] {event_type} order={order.id} queued for {len(recipients)} sessions")

        if self.relay_to_queues:
            self._spawn(relay_event(event))
        return event

    async def drain(self):
        """Wait for every delivery queued so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _enqueue(self, connection_id: str, event: Dict[str, Any]):
        outbox = self._outboxes.get(connection_id)
        if outbox is None:
            outbox = self._outboxes[connection_id] = deque()
            self._spawn(self._flush(connection_id, outbox))
        outbox.append(event)

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _flush(self, connection_id: str, outbox: Deque[Dict[str, Any]]):
        try:
            while outbox:
                event = outbox.popleft()
                session = self.registry.get(connection_id)
                if session is None or session.channel is None:
                    continue
                try:
                    await session.channel.send_json(event)
                    metrics.EVENTS_DELIVERED.labels(event_type=event["type"]).inc()
                except Exception as e:
                    logger.warning(f"[WS ERROR] {event['type']} → {connection_id} failed, dropping connection: {e}")
                    self.registry.unregister(connection_id)
                    outbox.clear()
        finally:
            # no await between the empty check and this, so nothing is lost
            if self._outboxes.get(connection_id) is outbox:
                del self._outboxes[connection_id]


session = aioboto3.Session()


async def relay_event(event: Dict[str, Any]):
    """Copy an event to the SQS queues of the services that follow it. Best-effort."""
    targets = EVENT_TARGETS.get(event["type"], [])
    if not targets:
        return
    try:
        async with session.client("sqs", region_name=config.AWS_REGION) as sqs:
            for service_name in targets:
                queue_url = SERVICE_QUEUE_MAP.get(service_name)
                if not queue_url:
                    logger.warning(f"[WARN] Missing queue for {service_name}")
                    continue
                try:
                    await sqs.send_message(QueueUrl=queue_url, MessageBody=json.dumps(event))
                    logger.info(f"[SQS → {service_name}] {event['type']} event_id={event['event_id']}")
                except Exception as e:
                    logger.warning(f"[SQS ERROR → {service_name}] {e}")
    except Exception as e:
        logger.error(f"[EVENT ERROR] {e}")
