# schemas.py
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Optional, Any, Dict

from pydantic import BaseModel, Field, PlainSerializer

# Exact cents in memory and in the database; plain numbers on the wire.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    ASSIGNED = "assigned"  # driver bound, waiting for pickup
    PICKED_UP = "picked_up"
    ON_THE_WAY = "on_the_way"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class Role(str, Enum):
    CUSTOMER = "customer"
    DRIVER = "driver"
    RESTAURANT = "restaurant"
    ADMIN = "admin"


class Actor(BaseModel):
    """Who is acting: the user id, their role and restaurant affiliation if any."""

    user_id: str
    role: Role
    restaurant_id: Optional[str] = None


# ------------------------- ORDER PARTS -------------------------
class Location(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class Address(BaseModel):
    street: str
    city: str
    state: Optional[str] = None
    zip_code: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None


class LineItemIn(BaseModel):
    name: str = Field(..., min_length=1)
    unit_price: Money = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    special_instructions: Optional[str] = None


class LineItem(LineItemIn):
    subtotal: Money


class PaymentConfirmation(BaseModel):
    method: str = "card"  # card | upi | wallet | cash
    status: str           # what the payment capability reported
    transaction_id: Optional[str] = None


class StatusEntry(BaseModel):
    status: OrderStatus
    timestamp: datetime
    note: Optional[str] = None


class RatingValue(BaseModel):
    value: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class Rating(BaseModel):
    restaurant: Optional[RatingValue] = None
    driver: Optional[RatingValue] = None


# ------------------------- ORDER -------------------------
class OrderCreate(BaseModel):
    restaurant_id: str
    items: List[LineItemIn] = Field(..., min_length=1)
    delivery_address: Address
    payment: PaymentConfirmation
    pickup_location: Optional[Location] = None
    delivery_fee: Optional[Money] = Field(None, ge=0)
    coupons: List[str] = []
    special_instructions: Optional[str] = None
    preparation_minutes: Optional[int] = Field(None, ge=0)


class Order(BaseModel):
    id: str
    customer_id: str
    restaurant_id: str
    driver_id: Optional[str] = None
    items: List[LineItem]
    subtotal: Money
    delivery_fee: Money
    tax: Money
    discount: Money
    final_amount: Money
    status: OrderStatus
    history: List[StatusEntry]
    delivery_address: Address
    pickup_location: Optional[Location] = None
    payment: Dict[str, Any]
    coupons: List[str] = []
    special_instructions: Optional[str] = None
    preparation_minutes: int
    delivery_minutes: int
    rating: Optional[Rating] = None
    assigned_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    estimated_delivery: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TransitionRequest(BaseModel):
    status: OrderStatus
    note: Optional[str] = None


class RatingRequest(Rating):
    pass


# ------------------------- DRIVERS -------------------------
class DriverAvailability(BaseModel):
    id: str
    is_online: bool
    is_verified: bool
    current_order_id: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    last_location_at: Optional[datetime] = None
    total_earnings: Money = Decimal("0.00")
    completed_deliveries: int = 0


class DriverRegister(BaseModel):
    is_verified: bool = True


class DriverStatusUpdate(BaseModel):
    is_online: bool


class DriverLocationUpdate(Location):
    pass
