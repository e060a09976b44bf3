import itertools

import pytest

from order_service.errors import Unauthorized
from order_service.schemas import Actor, Order, OrderStatus as S, Role
from order_service.state_machine import (
    Decision, OrderLocks, ROLE_EDGES, TERMINAL_STATES, TRANSITIONS, check_ownership, decide, is_terminal,
)


@pytest.mark.parametrize(
    "current,target,role,expected",
    [
        (S.PENDING, S.CONFIRMED, Role.RESTAURANT, Decision.ALLOW),
        (S.PENDING, S.REJECTED, Role.RESTAURANT, Decision.ALLOW),
        (S.PREPARING, S.READY, Role.RESTAURANT, Decision.ALLOW),
        (S.ASSIGNED, S.PICKED_UP, Role.DRIVER, Decision.ALLOW),
        (S.ON_THE_WAY, S.DELIVERED, Role.DRIVER, Decision.ALLOW),
        (S.READY, S.CANCELLED, Role.CUSTOMER, Decision.ALLOW),
        (S.ON_THE_WAY, S.CANCELLED, Role.ADMIN, Decision.ALLOW),
        # skipping states
        (S.PENDING, S.READY, Role.RESTAURANT, Decision.INVALID),
        (S.PREPARING, S.DELIVERED, Role.DRIVER, Decision.INVALID),
        (S.PREPARING, S.DELIVERED, Role.ADMIN, Decision.INVALID),
        (S.PREPARING, S.REJECTED, Role.RESTAURANT, Decision.INVALID),
        # wrong role
        (S.PENDING, S.CONFIRMED, Role.CUSTOMER, Decision.UNAUTHORIZED),
        (S.PENDING, S.CONFIRMED, Role.DRIVER, Decision.UNAUTHORIZED),
        (S.ON_THE_WAY, S.CANCELLED, Role.CUSTOMER, Decision.UNAUTHORIZED),
        (S.READY, S.ASSIGNED, Role.ADMIN, Decision.UNAUTHORIZED),
        (S.READY, S.ASSIGNED, Role.DRIVER, Decision.UNAUTHORIZED),
        # already there
        (S.CONFIRMED, S.CONFIRMED, Role.RESTAURANT, Decision.NOOP),
        (S.DELIVERED, S.DELIVERED, Role.DRIVER, Decision.NOOP),
        # terminal
        (S.DELIVERED, S.CANCELLED, Role.ADMIN, Decision.INVALID),
        (S.CANCELLED, S.CONFIRMED, Role.RESTAURANT, Decision.INVALID),
        (S.REJECTED, S.PENDING, Role.ADMIN, Decision.INVALID),
    ],
)
def test_decide(current, target, role, expected):
    assert decide(current, target, role) == expected


def test_decide_is_total_and_repeatable():
    for current, target, role in itertools.product(S, S, Role):
        first = decide(current, target, role)
        assert isinstance(first, Decision)
        assert decide(current, target, role) == first


def test_allowed_moves_follow_the_table():
    for current, target, role in itertools.product(S, S, Role):
        if decide(current, target, role) == Decision.ALLOW:
            assert target in TRANSITIONS[current]
            assert (current, target) in ROLE_EDGES[role]


def test_nothing_leaves_a_terminal_state():
    for current in TERMINAL_STATES:
        assert is_terminal(current)
        assert TRANSITIONS[current] == frozenset()
        for target, role in itertools.product(S, Role):
            if target != current:
                assert decide(current, target, role) == Decision.INVALID


def test_open_states_are_not_terminal():
    assert [s for s in S if not is_terminal(s)] == [s for s in S if TRANSITIONS[s]]


def test_no_role_may_request_assigned():
    for role, edges in ROLE_EDGES.items():
        assert all(target != S.ASSIGNED for _, target in edges)


def _order(**overrides):
    data = dict(
        id="SE1",
        customer_id="cust-1",
        restaurant_id="rest-1",
        driver_id=None,
        items=[],
        subtotal=0,
        delivery_fee=0,
        tax=0,
        discount=0,
        final_amount=0,
        status=S.PENDING,
        history=[],
        delivery_address={"street": "1 Main St", "city": "Springfield"},
        payment={"method": "card", "status": "completed"},
        preparation_minutes=20,
        delivery_minutes=30,
    )
    data.update(overrides)
    return Order(**data)


def test_check_ownership():
    order = _order(driver_id="drv-1")
    check_ownership(order, Actor(user_id="cust-1", role=Role.CUSTOMER))
    check_ownership(order, Actor(user_id="x", role=Role.RESTAURANT, restaurant_id="rest-1"))
    check_ownership(order, Actor(user_id="drv-1", role=Role.DRIVER))
    check_ownership(order, Actor(user_id="anyone", role=Role.ADMIN))

    for stranger in (
        Actor(user_id="cust-2", role=Role.CUSTOMER),
        Actor(user_id="x", role=Role.RESTAURANT, restaurant_id="rest-2"),
        Actor(user_id="x", role=Role.RESTAURANT),
        Actor(user_id="drv-2", role=Role.DRIVER),
    ):
        with pytest.raises(Unauthorized):
            check_ownership(order, stranger)


async def test_order_locks_are_released():
    locks = OrderLocks()
    async with locks.hold("SE1"):
        assert len(locks) == 1
    assert len(locks) == 0
