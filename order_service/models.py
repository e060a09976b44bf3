# models.py
from datetime import datetime
from sqlalchemy import (
    Table, Column, String, Float, Numeric, Integer, Boolean, JSON, DateTime, MetaData,
    ForeignKey, UniqueConstraint,
)

metadata = MetaData()

# ------------------------
# Orders table
# ------------------------
orders = Table(
    "orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("customer_id", String, nullable=False, index=True),
    Column("restaurant_id", String, nullable=False, index=True),
    Column("driver_id", String, nullable=True, index=True),
    Column("items", JSON, nullable=False),
    Column("subtotal", Numeric(10, 2), nullable=False),
    Column("delivery_fee", Numeric(10, 2), nullable=False, default=0),
    Column("tax", Numeric(10, 2), nullable=False, default=0),
    Column("discount", Numeric(10, 2), nullable=False, default=0),
    Column("final_amount", Numeric(10, 2), nullable=False),
    Column("status", String, nullable=False, default="pending", index=True),
    Column("delivery_address", JSON, nullable=False),
    Column("pickup_location", JSON, nullable=True),
    Column("payment", JSON, nullable=False),
    Column("coupons", JSON, nullable=True),
    Column("special_instructions", String, nullable=True),
    Column("preparation_minutes", Integer, nullable=False, default=20),
    Column("delivery_minutes", Integer, nullable=False, default=30),
    Column("rating", JSON, nullable=True),
    Column("assigned_at", DateTime, nullable=True),
    Column("delivered_at", DateTime, nullable=True),
    Column("created_at", DateTime, default=datetime.utcnow),
    Column("updated_at", DateTime, default=datetime.utcnow),
)

# ------------------------
# Status history (append-only)
# ------------------------
order_status_history = Table(
    "order_status_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String, ForeignKey("orders.id"), nullable=False, index=True),
    Column("status", String, nullable=False),
    Column("note", String, nullable=True),
    Column("created_at", DateTime, default=datetime.utcnow),
)

# ------------------------
# Drivers offered a ready order; declined_at marks a pass
# ------------------------
order_driver_pool = Table(
    "order_driver_pool",
    metadata,
    Column("order_id", String, ForeignKey("orders.id"), nullable=False, index=True),
    Column("driver_id", String, nullable=False),
    Column("offered_at", DateTime, default=datetime.utcnow),
    Column("declined_at", DateTime, nullable=True),
    UniqueConstraint("order_id", "driver_id", name="uix_pool_order_driver"),
)

# ------------------------
# Driver availability
# ------------------------
drivers = Table(
    "drivers",
    metadata,
    Column("id", String, primary_key=True),
    Column("is_online", Boolean, nullable=False, default=False),
    Column("is_verified", Boolean, nullable=False, default=False),
    Column("current_order_id", String, nullable=True),
    Column("lat", Float, nullable=True),
    Column("lng", Float, nullable=True),
    Column("last_location_at", DateTime, nullable=True),
    Column("total_earnings", Numeric(12, 2), nullable=False, default=0),
    Column("completed_deliveries", Integer, nullable=False, default=0),
    Column("updated_at", DateTime, default=datetime.utcnow),
)
