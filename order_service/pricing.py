"""
Order pricing and timing.

Money is Decimal throughout. Every amount is quantized to cents as soon as
it is computed and the final amount is the exact sum of those parts, so
``final_amount == subtotal + delivery_fee + tax - discount`` holds for
every stored order.
"""

import random
import string
import time
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Union

from order_service import config
from order_service.schemas import LineItem, LineItemIn, OrderStatus

_BASE36 = string.digits + string.ascii_uppercase

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Amount = Union[Decimal, float, int, str]


def money(amount: Amount) -> Decimal:
    # str() first so floats such as 2.99 keep their written value
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def _rate(value: Optional[float], default: float) -> Decimal:
    return Decimal(str(default if value is None else value))


def line_items(items: Iterable[LineItemIn]) -> List[LineItem]:
    return [
        LineItem(
            **item.model_dump(exclude={"unit_price"}),
            unit_price=money(item.unit_price),
            subtotal=money(money(item.unit_price) * item.quantity),
        )
        for item in items
    ]


def subtotal(items: Iterable[LineItem]) -> Decimal:
    return money(sum((item.subtotal for item in items), ZERO))


def tax(amount: Amount, rate: float = None) -> Decimal:
    return money(money(amount) * _rate(rate, config.TAX_RATE))


def discount(amount: Amount, coupons: Optional[List[str]], rate: float = None) -> Decimal:
    # Coupon validation belongs to the catalog side; any coupon gets the flat rate.
    if not coupons:
        return ZERO
    return money(money(amount) * _rate(rate, config.COUPON_DISCOUNT_RATE))


def final_amount(subtotal_: Decimal, delivery_fee: Decimal, tax_: Decimal, discount_: Decimal) -> Decimal:
    return subtotal_ + delivery_fee + tax_ - discount_


def driver_earnings(delivery_fee: Amount, share: float = None) -> Decimal:
    return money(money(delivery_fee) * _rate(share, config.DRIVER_EARNINGS_SHARE))


def _base36(number: int) -> str:
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def new_order_id() -> str:
    """SE + base36 millisecond timestamp + 4 random base36 chars."""
    suffix = "".join(random.choices(_BASE36, k=4))
    return f"SE{_base36(int(time.time() * 1000))}{suffix}"


def estimate_delivery(
    status: OrderStatus,
    preparation_minutes: int,
    delivery_minutes: int,
    now: datetime = None,
) -> Optional[datetime]:
    now = now or datetime.utcnow()
    if status in (OrderStatus.PENDING, OrderStatus.CONFIRMED):
        minutes = preparation_minutes + delivery_minutes
    elif status == OrderStatus.PREPARING:
        minutes = max(preparation_minutes + delivery_minutes - 10, 0)
    elif status in (OrderStatus.READY, OrderStatus.ASSIGNED):
        minutes = delivery_minutes
    elif status in (OrderStatus.PICKED_UP, OrderStatus.ON_THE_WAY):
        minutes = 15
    else:
        return None
    return now + timedelta(minutes=minutes)
