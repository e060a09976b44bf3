import re
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from order_service import pricing
from order_service.schemas import LineItemIn, OrderStatus


def test_line_items_and_subtotal():
    lines = pricing.line_items([
        LineItemIn(name="Margherita", unit_price=Decimal("12.50"), quantity=2),
        LineItemIn(name="Lemonade", unit_price=Decimal("3.25"), quantity=1),
    ])
    assert [line.subtotal for line in lines] == [Decimal("25.00"), Decimal("3.25")]
    assert pricing.subtotal(lines) == Decimal("28.25")


def test_money_rounds_half_up_to_cents():
    assert pricing.money(2.99) == Decimal("2.99")
    assert pricing.money("0.045") == Decimal("0.05")
    assert pricing.money(Decimal("1.4125")) == Decimal("1.41")
    assert pricing.money(3) == Decimal("3.00")


def test_tax_and_discount():
    assert pricing.tax(Decimal("28.25")) == Decimal("1.41")
    assert pricing.tax(100, rate=0.1) == Decimal("10.00")
    assert pricing.discount(Decimal("28.25"), []) == Decimal("0.00")
    assert pricing.discount(Decimal("28.25"), None) == Decimal("0.00")
    assert pricing.discount(Decimal("30.00"), ["WELCOME10"]) == Decimal("3.00")


def test_small_basket_with_coupon_adds_up_to_the_cent():
    lines = pricing.line_items([LineItemIn(name="Mint", unit_price=Decimal("0.15"), quantity=3)])
    subtotal = pricing.subtotal(lines)
    fee = pricing.money(2.99)
    tax = pricing.tax(subtotal)
    discount = pricing.discount(subtotal, ["WELCOME10"])

    assert (subtotal, fee, tax, discount) == (
        Decimal("0.45"), Decimal("2.99"), Decimal("0.02"), Decimal("0.05"),
    )
    assert pricing.final_amount(subtotal, fee, tax, discount) == Decimal("3.41")


@pytest.mark.parametrize("coupons", [None, ["WELCOME10"], ["WELCOME10", "FREESHIP"]])
@pytest.mark.parametrize("fee", ["0", "0.99", "2.99", "4.49"])
def test_final_amount_is_exact_sum_of_parts(coupons, fee):
    for cents in range(1, 400, 7):
        for quantity in (1, 2, 3, 7):
            lines = pricing.line_items([
                LineItemIn(name="Item", unit_price=Decimal(cents) / 100, quantity=quantity),
                LineItemIn(name="Side", unit_price=Decimal("0.15"), quantity=3),
            ])
            subtotal = pricing.subtotal(lines)
            delivery_fee = pricing.money(fee)
            tax = pricing.tax(subtotal)
            discount = pricing.discount(subtotal, coupons)
            total = pricing.final_amount(subtotal, delivery_fee, tax, discount)

            assert total == subtotal + delivery_fee + tax - discount
            assert total == total.quantize(pricing.CENT)
            for part in (subtotal, delivery_fee, tax, discount):
                assert part == part.quantize(pricing.CENT)


def test_driver_earnings_share():
    assert pricing.driver_earnings(5.0) == Decimal("4.00")
    assert pricing.driver_earnings(Decimal("2.99")) == Decimal("2.39")
    assert pricing.driver_earnings(5.0, share=0.5) == Decimal("2.50")


def test_new_order_id_format():
    ids = {pricing.new_order_id() for _ in range(50)}
    assert len(ids) == 50
    for order_id in ids:
        assert re.fullmatch(r"SE[0-9A-Z]{12,}", order_id)


@pytest.mark.parametrize(
    "status,minutes",
    [
        (OrderStatus.PENDING, 50),
        (OrderStatus.CONFIRMED, 50),
        (OrderStatus.PREPARING, 40),
        (OrderStatus.READY, 30),
        (OrderStatus.ASSIGNED, 30),
        (OrderStatus.PICKED_UP, 15),
        (OrderStatus.ON_THE_WAY, 15),
    ],
)
def test_estimate_delivery(status, minutes):
    now = datetime(2024, 5, 1, 12, 0, 0)
    assert pricing.estimate_delivery(status, 20, 30, now=now) == now + timedelta(minutes=minutes)


@pytest.mark.parametrize("status", [OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REJECTED])
def test_no_estimate_for_finished_orders(status):
    assert pricing.estimate_delivery(status, 20, 30) is None
