# store.py
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from databases import Database
from sqlalchemy import and_, select
from sqlalchemy.dialects import postgresql, sqlite

from order_service.errors import OrderError, NotFound, AssignmentConflict, TransientStoreError
from order_service.models import orders, order_status_history, order_driver_pool, drivers
from order_service.pricing import estimate_delivery
from order_service.schemas import Order, OrderStatus, StatusEntry, DriverAvailability

logger = logging.getLogger("order-service.store")


@asynccontextmanager
async def store_errors(action: str):
    """Surface driver/database failures as TransientStoreError; domain errors pass through."""
    try:
        yield
    except OrderError:
        raise
    except Exception as e:
        logger.error(f"[STORE ERROR] {action}: {e!r}")
        raise TransientStoreError(f"{action} failed, safe to retry") from e


def row_dict(row, table) -> Dict[str, Any]:
    # Key access runs the column type processors (JSON, DateTime, Boolean).
    return {column.name: row[column.name] for column in table.columns}


class OrderStore:
    """
    Durable orders plus their append-only status history.

    Plain fields (rating) are written with a normal update. Status is only
    ever written by a conditional update that names the status it expects to
    replace, and driver + status are only ever written together by
    claim_for_driver's compare-and-set. Never load an order, change
    driver_id in memory and write it back: that reintroduces the
    double-assignment race the conditional update exists to close.
    """

    def __init__(self, database: Database):
        self.database = database

    # ------------------------- READS -------------------------
    async def find(self, order_id: str) -> Optional[Order]:
        async with store_errors(f"load order {order_id}"):
            row = await self.database.fetch_one(orders.select().where(orders.c.id == order_id))
            if not row:
                return None
            history = await self._history(order_id)
        return self._to_order(row_dict(row, orders), history)

    async def get(self, order_id: str) -> Order:
        order = await self.find(order_id)
        if order is None:
            raise NotFound(f"order {order_id} not found")
        return order

    async def list_available(self, for_driver: Optional[str] = None) -> List[Order]:
        """Ready orders that no driver holds yet, oldest first, minus those `for_driver` declined."""
        query = orders.select().where(
            and_(orders.c.status == OrderStatus.READY.value, orders.c.driver_id.is_(None))
        )
        if for_driver:
            declined = select(order_driver_pool.c.order_id).where(and_(
                order_driver_pool.c.driver_id == for_driver,
                order_driver_pool.c.declined_at.is_not(None),
            ))
            query = query.where(orders.c.id.not_in(declined))
        async with store_errors("list available orders"):
            rows = await self.database.fetch_all(query.order_by(orders.c.created_at.asc()))
            result = []
            for row in rows:
                data = row_dict(row, orders)
                result.append(self._to_order(data, await self._history(data["id"])))
        return result

    async def pool(self, order_id: str) -> List[str]:
        """Drivers holding an open offer for the order."""
        async with store_errors(f"load pool for {order_id}"):
            rows = await self.database.fetch_all(
                select(order_driver_pool.c.driver_id)
                .where(and_(
                    order_driver_pool.c.order_id == order_id,
                    order_driver_pool.c.declined_at.is_(None),
                ))
            )
        return sorted(row["driver_id"] for row in rows)

    async def _history(self, order_id: str) -> List[StatusEntry]:
        rows = await self.database.fetch_all(
            order_status_history.select()
            .where(order_status_history.c.order_id == order_id)
            .order_by(order_status_history.c.id.asc())
        )
        return [
            StatusEntry(status=row["status"], timestamp=row["created_at"], note=row["note"])
            for row in rows
        ]

    @staticmethod
    def _to_order(data: Dict[str, Any], history: List[StatusEntry]) -> Order:
        data = dict(data)
        data["coupons"] = data.get("coupons") or []
        data["history"] = history
        data["estimated_delivery"] = estimate_delivery(
            OrderStatus(data["status"]), data["preparation_minutes"], data["delivery_minutes"]
        )
        return Order(**data)

    # ------------------------- WRITES -------------------------
    async def insert(self, values: Dict[str, Any], note: str) -> Order:
        now = datetime.utcnow()
        async with store_errors(f"create order {values['id']}"):
            async with self.database.transaction():
                await self.database.execute(
                    orders.insert().values(**values, created_at=now, updated_at=now)
                )
                await self.database.execute(
                    order_status_history.insert().values(
                        order_id=values["id"], status=values["status"], note=note, created_at=now
                    )
                )
        return await self.get(values["id"])

    async def apply_transition(
        self,
        order_id: str,
        from_status: OrderStatus,
        to_status: OrderStatus,
        note: Optional[str] = None,
        release_driver: Optional[str] = None,
        earnings: Optional[Decimal] = None,
    ) -> Optional[Order]:
        """
        Move the order from `from_status` to `to_status` and append history,
        atomically. Returns None when the stored status is no longer
        `from_status` (someone else moved the order first).

        `release_driver` clears that driver's current-order pointer in the
        same transaction; with `earnings` it also books the completed delivery.
        """
        now = datetime.utcnow()
        values = {"status": to_status.value, "updated_at": now}
        if to_status == OrderStatus.DELIVERED:
            values["delivered_at"] = now

        async with store_errors(f"transition {order_id} {from_status.value}->{to_status.value}"):
            async with self.database.transaction():
                # first statement of the transaction is a write
                moved = await self.database.fetch_one(
                    orders.update()
                    .where(and_(orders.c.id == order_id, orders.c.status == from_status.value))
                    .values(**values)
                    .returning(orders.c.id)
                )
                if moved is None:
                    return None
                await self.database.execute(
                    order_status_history.insert().values(
                        order_id=order_id, status=to_status.value, note=note, created_at=now
                    )
                )
                if release_driver:
                    await self._release_driver(release_driver, order_id, earnings, now)
        return await self.get(order_id)

    async def claim_for_driver(self, order_id: str, driver_id: str, note: str = None) -> Order:
        """
        Compare-and-set assignment. Both updates carry their precondition in
        the WHERE clause, so the store itself decides the winner even when
        several service instances race for the same order.
        """
        now = datetime.utcnow()
        async with store_errors(f"assign {order_id} to {driver_id}"):
            async with self.database.transaction():
                claimed_driver = await self.database.fetch_one(
                    drivers.update()
                    .where(and_(
                        drivers.c.id == driver_id,
                        drivers.c.current_order_id.is_(None),
                        drivers.c.is_online.is_(True),
                    ))
                    .values(current_order_id=order_id, updated_at=now)
                    .returning(drivers.c.id)
                )
                if claimed_driver is None:
                    raise AssignmentConflict(f"driver {driver_id} already holds an active order")

                claimed_order = await self.database.fetch_one(
                    orders.update()
                    .where(and_(
                        orders.c.id == order_id,
                        orders.c.driver_id.is_(None),
                        orders.c.status == OrderStatus.READY.value,
                    ))
                    .values(
                        driver_id=driver_id,
                        status=OrderStatus.ASSIGNED.value,
                        assigned_at=now,
                        updated_at=now,
                    )
                    .returning(orders.c.id)
                )
                if claimed_order is None:
                    # rolls back the driver claim above
                    raise AssignmentConflict()

                await self.database.execute(
                    order_status_history.insert().values(
                        order_id=order_id,
                        status=OrderStatus.ASSIGNED.value,
                        note=note or f"Driver {driver_id} assigned",
                        created_at=now,
                    )
                )
        return await self.get(order_id)

    async def add_to_pool(self, order_id: str, driver_ids: Iterable[str]):
        """Offer the order to each driver. Existing offers and declines stay as they are."""
        driver_ids = [d for d in driver_ids if d]
        if not driver_ids:
            return
        now = datetime.utcnow()
        async with store_errors(f"record pool for {order_id}"):
            for driver_id in driver_ids:
                await self.database.execute(
                    self._insert_ignoring_duplicates(order_driver_pool).values(
                        order_id=order_id, driver_id=driver_id, offered_at=now
                    )
                )

    async def decline(self, order_id: str, driver_id: str):
        """Mark the driver's offer as declined, so it is neither withdrawn nor offered again."""
        now = datetime.utcnow()
        async with store_errors(f"record decline of {order_id} by {driver_id}"):
            await self.database.execute(
                self._insert_ignoring_duplicates(order_driver_pool).values(
                    order_id=order_id, driver_id=driver_id, offered_at=now
                )
            )
            await self.database.execute(
                order_driver_pool.update()
                .where(and_(
                    order_driver_pool.c.order_id == order_id,
                    order_driver_pool.c.driver_id == driver_id,
                ))
                .values(declined_at=now)
            )

    def _insert_ignoring_duplicates(self, table):
        dialect = self.database.url.dialect
        if dialect == "postgresql":
            return postgresql.insert(table).on_conflict_do_nothing()
        if dialect == "sqlite":
            return sqlite.insert(table).on_conflict_do_nothing()
        return table.insert()

    async def set_rating(self, order_id: str, rating: Dict[str, Any]) -> Order:
        async with store_errors(f"rate order {order_id}"):
            await self.database.execute(
                orders.update()
                .where(orders.c.id == order_id)
                .values(rating=rating, updated_at=datetime.utcnow())
            )
        return await self.get(order_id)

    async def _release_driver(self, driver_id: str, order_id: str, earnings: Optional[Decimal], now: datetime):
        values = {"current_order_id": None, "updated_at": now}
        if earnings is not None:
            values["total_earnings"] = drivers.c.total_earnings + earnings
            values["completed_deliveries"] = drivers.c.completed_deliveries + 1
        await self.database.execute(
            drivers.update()
            .where(and_(drivers.c.id == driver_id, drivers.c.current_order_id == order_id))
            .values(**values)
        )


class DriverStore:
    """Driver availability: online flag, verification, location, current order."""

    def __init__(self, database: Database):
        self.database = database

    async def find(self, driver_id: str) -> Optional[DriverAvailability]:
        async with store_errors(f"load driver {driver_id}"):
            row = await self.database.fetch_one(drivers.select().where(drivers.c.id == driver_id))
        if not row:
            return None
        return DriverAvailability(**row_dict(row, drivers))

    async def get(self, driver_id: str) -> DriverAvailability:
        driver = await self.find(driver_id)
        if driver is None:
            raise NotFound(f"driver {driver_id} not found")
        return driver

    async def upsert(self, driver_id: str, is_verified: bool = True) -> DriverAvailability:
        now = datetime.utcnow()
        async with store_errors(f"register driver {driver_id}"):
            updated = await self.database.fetch_one(
                drivers.update()
                .where(drivers.c.id == driver_id)
                .values(is_verified=is_verified, updated_at=now)
                .returning(drivers.c.id)
            )
            if updated is None:
                await self.database.execute(
                    drivers.insert().values(
                        id=driver_id,
                        is_online=False,
                        is_verified=is_verified,
                        total_earnings=Decimal("0.00"),
                        completed_deliveries=0,
                        updated_at=now,
                    )
                )
        return await self.get(driver_id)

    async def set_online(self, driver_id: str, is_online: bool) -> DriverAvailability:
        await self._update(driver_id, is_online=is_online)
        return await self.get(driver_id)

    async def set_location(self, driver_id: str, lat: float, lng: float) -> DriverAvailability:
        await self._update(driver_id, lat=lat, lng=lng, last_location_at=datetime.utcnow())
        return await self.get(driver_id)

    async def eligible(self) -> List[DriverAvailability]:
        """Online, verified drivers without an active delivery."""
        async with store_errors("list eligible drivers"):
            rows = await self.database.fetch_all(
                drivers.select()
                .where(and_(
                    drivers.c.is_online.is_(True),
                    drivers.c.is_verified.is_(True),
                    drivers.c.current_order_id.is_(None),
                ))
                .order_by(drivers.c.id.asc())
            )
        return [DriverAvailability(**row_dict(row, drivers)) for row in rows]

    async def _update(self, driver_id: str, **values):
        values["updated_at"] = datetime.utcnow()
        async with store_errors(f"update driver {driver_id}"):
            updated = await self.database.fetch_one(
                drivers.update().where(drivers.c.id == driver_id).values(**values).returning(drivers.c.id)
            )
        if updated is None:
            raise NotFound(f"driver {driver_id} not found")
