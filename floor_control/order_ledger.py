import logging

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from floor_control.machines import MachineRegistry
from floor_control.models import ORDER_STATUSES, Order

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("pending", "in_progress")

# new status -> statuses it may be entered from
_ALLOWED_FROM = {
    "in_progress": {"pending"},
    "completed": {"pending", "in_progress"},
    "cancelled": {"pending", "in_progress"},
}

_EDITABLE_FIELDS = ("product", "color", "mold_name", "notes", "quantity")


class OrderNotFoundError(Exception):
    def __init__(self, order_id: int):
        super().__init__(f"No order found with id={order_id!r}")
        self.order_id = order_id


class InvalidOrderStatusError(ValueError):
    def __init__(self, status: str):
        super().__init__(
            f"Unsupported order status: {status!r}. Supported: {', '.join(ORDER_STATUSES)}"
        )
        self.status = status


class InvalidStatusTransitionError(Exception):
    def __init__(self, order_id: int, current: str, requested: str):
        super().__init__(
            f"Order {order_id} cannot move from {current!r} to {requested!r}"
        )
        self.order_id = order_id
        self.current = current
        self.requested = requested


def remaining_qty(order: Order) -> int:
    return max(0, (order.quantity or 0) - (order.completed_qty or 0))


def _check_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValueError(f"quantity must be a positive integer, got {quantity!r}")
    return quantity


def _check_delta(delta) -> int:
    if isinstance(delta, bool) or not isinstance(delta, int) or delta < 0:
        raise ValueError(f"delta must be a non-negative integer, got {delta!r}")
    return delta


class OrderLedger:
    """Owns machine orders and their derived ``completed_qty`` counter.

    The counter is only ever changed through :meth:`increment_completed_qty`
    and :meth:`decrement_completed_qty`, each a single ``UPDATE`` statement so
    concurrent report rows cannot lose an update. Those two methods belong to
    the reconciliation layer; nothing else should call them.
    """

    def __init__(self, session: Session):
        self._session = session

    def get_order(self, order_id: int) -> Order:
        order = self._session.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def list_orders(self, status: str | None = None) -> list[Order]:
        stmt = select(Order)
        if status:
            stmt = stmt.where(Order.status == status)
        stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc())
        return list(self._session.execute(stmt).scalars().all())

    def orders_for_machine(self, machine_id: int) -> list[Order]:
        stmt = (
            select(Order)
            .where(Order.machine_id == machine_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
        )
        return list(self._session.execute(stmt).scalars().all())

    def active_orders_for_machine(self, machine_id: int) -> list[Order]:
        stmt = (
            select(Order)
            .where(Order.machine_id == machine_id, Order.status.in_(ACTIVE_STATUSES))
            .order_by(Order.id.asc())
        )
        return list(self._session.execute(stmt).scalars().all())

    def has_other_in_progress(self, machine_id: int, exclude_order_id: int) -> bool:
        stmt = select(Order.id).where(
            Order.machine_id == machine_id,
            Order.status == "in_progress",
            Order.id != exclude_order_id,
        )
        return self._session.execute(stmt.limit(1)).first() is not None

    def create_order(
        self,
        machine_id: int,
        product: str,
        quantity: int,
        color: str | None = None,
        mold_name: str | None = None,
        notes: str | None = None,
        created_by: int | None = None,
    ) -> Order:
        product = (product or "").strip()
        if not product:
            raise ValueError("product must be non-empty")
        _check_quantity(quantity)
        MachineRegistry(self._session).get_machine(machine_id)

        order = Order(
            machine_id=machine_id,
            product=product,
            quantity=quantity,
            completed_qty=0,
            status="pending",
            color=color,
            mold_name=mold_name,
            notes=notes,
            created_by=created_by,
        )
        self._session.add(order)
        self._session.flush()
        logger.info("order %s created for machine %s: %s x %s", order.id, machine_id, quantity, product)
        return order

    def update_order(self, order_id: int, **fields) -> Order:
        unknown = set(fields) - set(_EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"fields not editable on an order: {sorted(unknown)}")
        order = self.get_order(order_id)
        if "quantity" in fields:
            _check_quantity(fields["quantity"])
        if "product" in fields:
            fields["product"] = (fields["product"] or "").strip()
            if not fields["product"]:
                raise ValueError("product must be non-empty")
        for name, value in fields.items():
            setattr(order, name, value)
        self._session.flush()
        return order

    def transition(self, order_id: int, new_status: str) -> tuple[Order, str]:
        """Move an order to ``new_status``; returns the order and its previous status."""
        if new_status not in ORDER_STATUSES:
            raise InvalidOrderStatusError(new_status)
        order = self.get_order(order_id)
        previous = order.status
        if previous not in _ALLOWED_FROM.get(new_status, set()):
            raise InvalidStatusTransitionError(order_id, previous, new_status)
        order.status = new_status
        self._session.flush()
        return order, previous

    def _apply_counter(self, order_id: int, expression) -> None:
        order = self.get_order(order_id)
        stmt = (
            update(Order)
            .where(Order.id == order_id)
            .values(completed_qty=expression)
            .execution_options(synchronize_session=False)
        )
        self._session.execute(stmt)
        self._session.expire(order, ["completed_qty"])

    def increment_completed_qty(self, order_id: int, delta: int) -> None:
        _check_delta(delta)
        if delta == 0:
            return
        self._apply_counter(order_id, Order.completed_qty + delta)

    def decrement_completed_qty(self, order_id: int, delta: int) -> None:
        _check_delta(delta)
        if delta == 0:
            return
        # Floor at zero; only reachable when the counter was already inconsistent.
        self._apply_counter(
            order_id,
            case((Order.completed_qty >= delta, Order.completed_qty - delta), else_=0),
        )

    def set_completed_qty(self, order_id: int, value: int) -> None:
        """Overwrite the counter; reserved for the repair sweep."""
        _check_delta(value)
        self._apply_counter(order_id, value)
