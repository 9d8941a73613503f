"""Cross-aggregate consistency between report rows, orders and machines.

Every externally triggered mutation runs as one unit of work here:

1. the primary write (order, row, status) is flushed;
2. the derived side effect (journal entry plus counter delta, or machine
   status) is applied inside a SAVEPOINT;
3. the session commits.

A database failure in step 2 rolls back only the savepoint. The primary
write still commits, the failure is logged at WARNING, and :meth:`sweep`
repairs the counters afterwards. Report rows are the source of truth;
``Order.completed_qty`` is a cache of their sum.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from floor_control import journal as ops
from floor_control.journal import ReconciliationJournal
from floor_control.machines import MachineRegistry
from floor_control.material_requests import MaterialRequestService
from floor_control.models import MaterialRequest, Order, ShiftReportRow
from floor_control.order_ledger import OrderLedger, OrderNotFoundError
from floor_control.report_ledger import ReportRowLedger

logger = logging.getLogger(__name__)

APPLIED = "applied"
SKIPPED = "skipped"
DUPLICATE = "duplicate"
FAILED = "failed"

_SWEEP_BATCH = 500


@dataclass
class PlacedOrder:
    order: Order
    material_request: MaterialRequest | None


@dataclass
class RowResult:
    row: ShiftReportRow
    reconciliation: str


@dataclass
class OrderCorrection:
    order_id: int
    recorded_qty: int
    live_qty: int


@dataclass
class SweepResult:
    orders_checked: int = 0
    corrections: list[OrderCorrection] = field(default_factory=list)
    rows_backfilled: int = 0
    dry_run: bool = False

    @property
    def consistent(self) -> bool:
        return not self.corrections


class ReconciliationCoordinator:
    def __init__(self, session: Session):
        self._session = session
        self.orders = OrderLedger(session)
        self.reports = ReportRowLedger(session)
        self.machines = MachineRegistry(session)
        self.material_requests = MaterialRequestService(session)
        self.journal = ReconciliationJournal(session)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    def place_order(self, machine_id: int, product: str, quantity: int, **metadata) -> PlacedOrder:
        try:
            order = self.orders.create_order(machine_id, product, quantity, **metadata)
            request = self.material_requests.on_order_created(order)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        return PlacedOrder(order=order, material_request=request)

    def change_order_status(self, order_id: int, new_status: str) -> Order:
        try:
            order, previous = self.orders.transition(order_id, new_status)
            self._sync_machine(order)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        logger.info("order %s status %s -> %s", order_id, previous, new_status)
        return order

    def _sync_machine(self, order: Order) -> None:
        if order.status == "in_progress":
            self.machines.set_status(order.machine_id, "running")
        elif order.status in ("completed", "cancelled"):
            if not self.orders.has_other_in_progress(order.machine_id, order.id):
                self.machines.set_status(order.machine_id, "idle")

    # ------------------------------------------------------------------
    # Report rows
    # ------------------------------------------------------------------
    def add_report_row(self, report_id: int, order_id: int | None = None, actual_qty: int = 0, **fields) -> RowResult:
        try:
            if order_id is not None:
                self.orders.get_order(order_id)
            row = self.reports.add_row(report_id, order_id=order_id, actual_qty=actual_qty, **fields)
        except Exception:
            self._session.rollback()
            raise

        status = SKIPPED
        if row.order_id is not None and row.actual_qty > 0:
            status = self._apply_guarded(
                row.id,
                [(ops.CREATE, row.revision, row.order_id, row.actual_qty)],
            )
        self._session.commit()
        return RowResult(row=row, reconciliation=status)

    def update_report_row(self, row_id: int, **fields) -> RowResult:
        try:
            new_order_id = fields.get("order_id")
            if new_order_id is not None:
                self.orders.get_order(new_order_id)
            row, previous = self.reports.update_row(row_id, **fields)
        except Exception:
            self._session.rollback()
            raise

        status = SKIPPED
        if row.revision != previous["revision"]:
            # Reverse what the journal says was applied, not the stored quantity:
            # the two differ after a failed reconciliation.
            steps = [
                (ops.EDIT_REVERSE, row.revision, order_id, -net)
                for order_id, net in self.journal.applied_by_order(row.id).items()
            ]
            if row.order_id is not None and row.actual_qty > 0:
                steps.append((ops.EDIT_APPLY, row.revision, row.order_id, row.actual_qty))
            if steps:
                status = self._apply_guarded(row.id, steps)
        self._session.commit()
        return RowResult(row=row, reconciliation=status)

    def delete_report_row(self, row_id: int) -> str:
        try:
            status = self._delete_row(row_id)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        return status

    def delete_report(self, report_id: int) -> int:
        try:
            self.reports.get_report(report_id)
            rows = self.reports.rows_for_report(report_id)
            for row in rows:
                self._delete_row(row.id)
            self.reports.delete_report(report_id)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        return len(rows)

    def _delete_row(self, row_id: int) -> str:
        row = self.reports.get_row(row_id)
        # Read server-side at deletion time; never trust a client-supplied quantity.
        order_id, qty, revision = row.order_id, row.actual_qty, row.revision
        applied = self.journal.applied_by_order(row_id)
        self.reports.delete_row(row_id)

        if not applied:
            if order_id is not None and qty > 0:
                logger.warning(
                    "deleted row %s (order %s, qty %s) was never reconciled; counter left untouched",
                    row_id, order_id, qty,
                )
            return SKIPPED
        return self._apply_guarded(
            row_id, [(ops.DELETE, revision, applied_order, -net) for applied_order, net in applied.items()]
        )

    def reconcile_row(self, row_id: int) -> str:
        """Retry the creation delta of a row whose first reconciliation failed."""
        row = self.reports.get_row(row_id)
        if self.journal.has_events(row_id):
            return DUPLICATE
        if row.order_id is None or row.actual_qty <= 0:
            return SKIPPED
        status = self._apply_guarded(
            row.id, [(ops.CREATE, row.revision, row.order_id, row.actual_qty)]
        )
        self._session.commit()
        return status

    def _apply_guarded(self, row_id: int, steps: list[tuple[str, int, int, int]]) -> str:
        """Journal and apply ``steps`` as one savepoint; never raises on DB errors."""
        try:
            with self._session.begin_nested():
                for operation, revision, order_id, delta in steps:
                    self.journal.record(row_id, operation, revision, order_id, delta)
                    if delta > 0:
                        self.orders.increment_completed_qty(order_id, delta)
                    elif delta < 0:
                        self.orders.decrement_completed_qty(order_id, -delta)
        except IntegrityError:
            logger.info("row %s: %s already reconciled; skipping", row_id, [s[0] for s in steps])
            return DUPLICATE
        except (SQLAlchemyError, OrderNotFoundError) as exc:
            logger.warning(
                "reconciliation failed for row %s steps=%s: %s; run the reconciliation sweep",
                row_id, steps, exc,
            )
            return FAILED
        return APPLIED

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------
    def sweep(self, dry_run: bool = False) -> SweepResult:
        """Recompute every order's completed quantity from its live rows."""
        result = SweepResult(dry_run=dry_run)
        live = self.reports.live_qty_by_order()

        for order_id, recorded in self._session.execute(select(Order.id, Order.completed_qty)).all():
            result.orders_checked += 1
            live_qty = live.get(order_id, 0)
            if recorded == live_qty:
                continue
            result.corrections.append(OrderCorrection(order_id, recorded, live_qty))
            logger.warning(
                "order %s completed_qty=%s but live rows sum to %s%s",
                order_id, recorded, live_qty, " (dry run)" if dry_run else "; corrected",
            )
            if not dry_run:
                self.orders.set_completed_qty(order_id, live_qty)

        rows = self._session.execute(
            select(
                ShiftReportRow.id, ShiftReportRow.order_id, ShiftReportRow.actual_qty, ShiftReportRow.revision
            ).order_by(ShiftReportRow.id)
        ).all()
        applied: dict[int, dict[int, int]] = {}
        for start in range(0, len(rows), _SWEEP_BATCH):
            applied.update(self.journal.applied_by_row([r.id for r in rows[start:start + _SWEEP_BATCH]]))

        # Realign each row's journal with what the corrected counters now hold,
        # so later edits and deletes reverse the right amount.
        for row in rows:
            expected = {row.order_id: row.actual_qty} if row.order_id is not None and row.actual_qty > 0 else {}
            current = applied.get(row.id, {})
            if current == expected:
                continue
            result.rows_backfilled += 1
            if dry_run:
                continue
            for order_id in sorted(set(expected) | set(current)):
                diff = expected.get(order_id, 0) - current.get(order_id, 0)
                if diff:
                    self.journal.record(row.id, ops.SWEEP, row.revision, order_id, diff, source="sweep")

        if dry_run:
            self._session.rollback()
        else:
            self._session.commit()
        logger.info(
            "reconciliation sweep: %d orders checked, %d corrected, %d rows backfilled%s",
            result.orders_checked, len(result.corrections), result.rows_backfilled,
            " (dry run)" if dry_run else "",
        )
        return result
