import pytest

from floor_control.machines import MachineNotFoundError, MachineRegistry
from floor_control.models import Machine
from floor_control.order_ledger import (
    InvalidOrderStatusError,
    InvalidStatusTransitionError,
    OrderLedger,
    OrderNotFoundError,
    remaining_qty,
)


def _machine_id(session, number="TPA-01"):
    return session.query(Machine).filter_by(number=number).one().id


def test_create_order_starts_pending_with_zero_completed(seeded_session):
    ledger = OrderLedger(seeded_session)
    order = ledger.create_order(_machine_id(seeded_session), "  Cup 200ml ", 500, color="white")
    seeded_session.commit()
    assert order.product == "Cup 200ml"
    assert order.status == "pending"
    assert order.completed_qty == 0
    assert remaining_qty(order) == 500


def test_create_order_does_not_touch_machine_status(seeded_session):
    mid = _machine_id(seeded_session)
    OrderLedger(seeded_session).create_order(mid, "Cup 200ml", 10)
    assert MachineRegistry(seeded_session).get_machine(mid).status == "idle"


@pytest.mark.parametrize("quantity", [0, -5, 1.5, True])
def test_create_order_rejects_bad_quantity(seeded_session, quantity):
    with pytest.raises(ValueError):
        OrderLedger(seeded_session).create_order(_machine_id(seeded_session), "Cup 200ml", quantity)


def test_create_order_rejects_empty_product(seeded_session):
    with pytest.raises(ValueError):
        OrderLedger(seeded_session).create_order(_machine_id(seeded_session), "   ", 10)


def test_create_order_unknown_machine(seeded_session):
    with pytest.raises(MachineNotFoundError):
        OrderLedger(seeded_session).create_order(9999, "Cup 200ml", 10)


def test_get_order_not_found(seeded_session):
    with pytest.raises(OrderNotFoundError) as exc_info:
        OrderLedger(seeded_session).get_order(42)
    assert exc_info.value.order_id == 42


def test_legal_transitions(seeded_session):
    ledger = OrderLedger(seeded_session)
    order = ledger.create_order(_machine_id(seeded_session), "Cup 200ml", 10)
    _, previous = ledger.transition(order.id, "in_progress")
    assert previous == "pending"
    _, previous = ledger.transition(order.id, "completed")
    assert previous == "in_progress"
    assert order.status == "completed"


@pytest.mark.parametrize(
    "path",
    [
        ["pending"],
        ["in_progress", "in_progress"],
        ["completed", "in_progress"],
        ["cancelled", "completed"],
        ["in_progress", "pending"],
    ],
)
def test_illegal_transitions_raise(seeded_session, path):
    ledger = OrderLedger(seeded_session)
    order = ledger.create_order(_machine_id(seeded_session), "Cup 200ml", 10)
    for status in path[:-1]:
        ledger.transition(order.id, status)
    with pytest.raises(InvalidStatusTransitionError):
        ledger.transition(order.id, path[-1])


def test_unknown_status_is_validation_error(seeded_session):
    ledger = OrderLedger(seeded_session)
    order = ledger.create_order(_machine_id(seeded_session), "Cup 200ml", 10)
    with pytest.raises(InvalidOrderStatusError):
        ledger.transition(order.id, "done")


def test_counter_increment_and_clamped_decrement(seeded_session):
    ledger = OrderLedger(seeded_session)
    order = ledger.create_order(_machine_id(seeded_session), "Cup 200ml", 100)
    ledger.increment_completed_qty(order.id, 30)
    ledger.increment_completed_qty(order.id, 20)
    assert ledger.get_order(order.id).completed_qty == 50
    ledger.decrement_completed_qty(order.id, 80)
    assert ledger.get_order(order.id).completed_qty == 0


def test_counter_rejects_negative_delta(seeded_session):
    ledger = OrderLedger(seeded_session)
    order = ledger.create_order(_machine_id(seeded_session), "Cup 200ml", 100)
    with pytest.raises(ValueError):
        ledger.increment_completed_qty(order.id, -1)


def test_remaining_qty_never_negative(seeded_session):
    ledger = OrderLedger(seeded_session)
    order = ledger.create_order(_machine_id(seeded_session), "Cup 200ml", 10)
    ledger.increment_completed_qty(order.id, 25)
    assert remaining_qty(ledger.get_order(order.id)) == 0


def test_update_order_keeps_counter_and_status(seeded_session):
    ledger = OrderLedger(seeded_session)
    order = ledger.create_order(_machine_id(seeded_session), "Cup 200ml", 10)
    ledger.increment_completed_qty(order.id, 4)
    ledger.update_order(order.id, quantity=20, notes="rush")
    order = ledger.get_order(order.id)
    assert (order.quantity, order.completed_qty, order.status) == (20, 4, "pending")
    with pytest.raises(ValueError):
        ledger.update_order(order.id, completed_qty=0)


def test_active_orders_for_machine(seeded_session):
    ledger = OrderLedger(seeded_session)
    mid = _machine_id(seeded_session)
    a = ledger.create_order(mid, "Cup 200ml", 10)
    b = ledger.create_order(mid, "Cup 200ml", 10)
    c = ledger.create_order(mid, "Cup 200ml", 10)
    ledger.transition(b.id, "in_progress")
    ledger.transition(c.id, "cancelled")
    assert [o.id for o in ledger.active_orders_for_machine(mid)] == [a.id, b.id]
    assert len(ledger.orders_for_machine(mid)) == 3
