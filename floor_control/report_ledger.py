from datetime import date

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from floor_control.models import ShiftReport, ShiftReportRow

# Row fields that never touch an order's completed quantity.
DESCRIPTIVE_FIELDS = (
    "machine_number",
    "mold_product",
    "product_color",
    "plan_qty",
    "standard_cycle",
    "actual_cycle",
    "downtime_min",
    "downtime_reason",
    "defect_kg",
    "changeover",
    "standard_weight",
    "avg_weight",
    "sort_order",
)
# Row fields that move quantity between orders.
RECONCILED_FIELDS = ("order_id", "actual_qty")


class ReportNotFoundError(Exception):
    def __init__(self, report_id: int):
        super().__init__(f"No shift report found with id={report_id!r}")
        self.report_id = report_id


class ReportRowNotFoundError(Exception):
    def __init__(self, row_id: int):
        super().__init__(f"No shift report row found with id={row_id!r}")
        self.row_id = row_id


def _check_actual_qty(actual_qty) -> int:
    if isinstance(actual_qty, bool) or not isinstance(actual_qty, int) or actual_qty < 0:
        raise ValueError(f"actual_qty must be a non-negative integer, got {actual_qty!r}")
    return actual_qty


def _check_descriptive(fields: dict) -> dict:
    unknown = set(fields) - set(DESCRIPTIVE_FIELDS)
    if unknown:
        raise ValueError(f"unknown report row fields: {sorted(unknown)}")
    for name in ("plan_qty", "downtime_min", "changeover"):
        value = fields.get(name)
        if value is not None and value < 0:
            raise ValueError(f"{name} must be non-negative, got {value!r}")
    return fields


class ReportRowLedger:
    """Persistence for shift reports and their rows.

    Stores rows only. Applying a row's quantity to its order is the
    reconciliation coordinator's job.
    """

    def __init__(self, session: Session):
        self._session = session

    def create_report(
        self, shift_date: date, shift_number: int, user_id: int | None = None, notes: str | None = None
    ) -> ShiftReport:
        if shift_number not in (1, 2, 3):
            raise ValueError(f"shift_number must be 1, 2 or 3, got {shift_number!r}")
        report = ShiftReport(shift_date=shift_date, shift_number=shift_number, user_id=user_id, notes=notes)
        self._session.add(report)
        self._session.flush()
        return report

    def get_report(self, report_id: int) -> ShiftReport:
        report = self._session.get(ShiftReport, report_id)
        if report is None:
            raise ReportNotFoundError(report_id)
        return report

    def list_reports(self, limit: int = 100) -> list[ShiftReport]:
        stmt = (
            select(ShiftReport)
            .order_by(ShiftReport.shift_date.desc(), ShiftReport.shift_number.desc(), ShiftReport.id.desc())
            .limit(limit)
        )
        return list(self._session.execute(stmt).scalars().all())

    def rows_for_report(self, report_id: int) -> list[ShiftReportRow]:
        stmt = (
            select(ShiftReportRow)
            .where(ShiftReportRow.report_id == report_id)
            .order_by(ShiftReportRow.sort_order.asc(), ShiftReportRow.id.asc())
        )
        return list(self._session.execute(stmt).scalars().all())

    def get_row(self, row_id: int) -> ShiftReportRow:
        row = self._session.get(ShiftReportRow, row_id)
        if row is None:
            raise ReportRowNotFoundError(row_id)
        return row

    def add_row(
        self, report_id: int, order_id: int | None = None, actual_qty: int = 0, **fields
    ) -> ShiftReportRow:
        self.get_report(report_id)
        _check_actual_qty(actual_qty)
        _check_descriptive(fields)
        row = ShiftReportRow(report_id=report_id, order_id=order_id, actual_qty=actual_qty, revision=0, **fields)
        self._session.add(row)
        self._session.flush()
        return row

    def update_row(self, row_id: int, **fields) -> tuple[ShiftReportRow, dict]:
        """Apply field changes; returns the row and the previous reconciled values.

        The revision is bumped only when ``order_id`` or ``actual_qty`` change.
        """
        row = self.get_row(row_id)
        reconciled = {k: fields.pop(k) for k in RECONCILED_FIELDS if k in fields}
        _check_descriptive(fields)
        if "actual_qty" in reconciled:
            _check_actual_qty(reconciled["actual_qty"])

        previous = {"order_id": row.order_id, "actual_qty": row.actual_qty, "revision": row.revision}
        for name, value in fields.items():
            setattr(row, name, value)
        changed = any(getattr(row, k) != v for k, v in reconciled.items())
        if changed:
            for name, value in reconciled.items():
                setattr(row, name, value)
            row.revision = (row.revision or 0) + 1
        self._session.flush()
        return row, previous

    def delete_row(self, row_id: int) -> ShiftReportRow:
        row = self.get_row(row_id)
        self._session.delete(row)
        self._session.flush()
        return row

    def delete_report(self, report_id: int) -> None:
        report = self.get_report(report_id)
        self._session.delete(report)
        self._session.flush()

    def live_qty_by_order(self) -> dict[int, int]:
        stmt = (
            select(ShiftReportRow.order_id, func.coalesce(func.sum(ShiftReportRow.actual_qty), 0))
            .where(ShiftReportRow.order_id.is_not(None))
            .group_by(ShiftReportRow.order_id)
        )
        return {order_id: int(total) for order_id, total in self._session.execute(stmt).all()}

    def live_qty_for_order(self, order_id: int) -> int:
        stmt = select(func.coalesce(func.sum(ShiftReportRow.actual_qty), 0)).where(
            ShiftReportRow.order_id == order_id
        )
        return int(self._session.execute(stmt).scalar_one())
