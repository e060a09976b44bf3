import pytest
from databases import Database

from order_service.database import create_tables
from order_service.schemas import (
    Actor, Address, LineItemIn, OrderStatus, PaymentConfirmation, Role,
)
from order_service.service import OrderService

CUSTOMER = Actor(user_id="cust-1", role=Role.CUSTOMER)
OTHER_CUSTOMER = Actor(user_id="cust-2", role=Role.CUSTOMER)
RESTAURANT = Actor(user_id="staff-1", role=Role.RESTAURANT, restaurant_id="rest-1")
OTHER_RESTAURANT = Actor(user_id="staff-9", role=Role.RESTAURANT, restaurant_id="rest-9")
ADMIN = Actor(user_id="admin-1", role=Role.ADMIN)


def driver(driver_id: str) -> Actor:
    return Actor(user_id=driver_id, role=Role.DRIVER)


class FakeChannel:
    """Stands in for a websocket: records every pushed event."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_json(self, event):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(event)

    def types(self):
        return [event["type"] for event in self.sent]

    def of_type(self, event_type):
        return [event for event in self.sent if event["type"] == event_type]


class FakePayments:
    def __init__(self):
        self.refunds = []

    async def refund(self, order):
        self.refunds.append(order.id)


class FakeLedger:
    def __init__(self):
        self.settled = []

    async def settle(self, order, amount):
        self.settled.append((order.driver_id, order.id, amount))


@pytest.fixture
def database_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'orders.db'}"
    create_tables(url)
    return url


@pytest.fixture
async def database(database_url):
    db = Database(database_url)
    await db.connect()
    yield db
    await db.disconnect()


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
async def service(database, payments, ledger):
    svc = OrderService(database, payments=payments, ledger=ledger, relay_to_queues=False)
    yield svc
    await svc.close()


async def place_order(service, customer_id="cust-1", restaurant_id="rest-1", method="card", status="succeeded", **kwargs):
    return await service.create_order(
        customer_id,
        restaurant_id,
        [
            LineItemIn(name="Margherita", unit_price=12.5, quantity=2),
            LineItemIn(name="Lemonade", unit_price=3.25, quantity=1),
        ],
        Address(street="1 Main St", city="Springfield", lat=40.0, lng=-74.0),
        PaymentConfirmation(method=method, status=status, transaction_id="txn-1"),
        **kwargs,
    )


async def ready_order(service, **kwargs):
    order = await place_order(service, **kwargs)
    for status in (OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.READY):
        order = await service.request_transition(order.id, RESTAURANT, status)
    return order


async def online_driver(service, driver_id: str, verified: bool = True):
    await service.upsert_driver(driver_id, is_verified=verified)
    return await service.set_driver_online(driver_id, True)
