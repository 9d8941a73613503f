from collections import defaultdict

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from floor_control.models import ReconciliationEvent

CREATE = "create"
DELETE = "delete"
EDIT_REVERSE = "edit_reverse"
EDIT_APPLY = "edit_apply"
SWEEP = "sweep"


class ReconciliationJournal:
    """Record of every quantity delta applied to an order on a row's behalf.

    Idempotency is enforced by the database through
    ``UNIQUE(row_id, operation, revision, order_id)``: a replayed event cannot
    apply its delta twice, even under concurrent retries. The net ``delta`` of
    a row's events per order is what that row currently contributes to the
    order's ``completed_qty``.
    """

    def __init__(self, session: Session):
        self._session = session

    def record(
        self,
        row_id: int,
        operation: str,
        revision: int,
        order_id: int,
        delta: int,
        source: str = "live",
    ) -> ReconciliationEvent:
        """Stage an event and flush it.

        Raises ``IntegrityError`` when the key was already recorded; callers run
        this inside a savepoint so the duplicate can be rolled back cleanly.
        """
        event = ReconciliationEvent(
            row_id=row_id,
            operation=operation,
            revision=revision,
            order_id=order_id,
            delta=delta,
            source=source,
        )
        self._session.add(event)
        self._session.flush()
        return event

    def has_events(self, row_id: int) -> bool:
        stmt = select(ReconciliationEvent.id).where(ReconciliationEvent.row_id == row_id)
        return self._session.execute(stmt.limit(1)).first() is not None

    def applied_by_order(self, row_id: int) -> dict[int, int]:
        """Net quantity this row has applied to each order; zero nets are omitted."""
        return self.applied_by_row([row_id]).get(row_id, {})

    def applied_by_row(self, row_ids: list[int]) -> dict[int, dict[int, int]]:
        if not row_ids:
            return {}
        stmt = (
            select(
                ReconciliationEvent.row_id,
                ReconciliationEvent.order_id,
                func.sum(ReconciliationEvent.delta),
            )
            .where(ReconciliationEvent.row_id.in_(row_ids))
            .group_by(ReconciliationEvent.row_id, ReconciliationEvent.order_id)
        )
        applied: dict[int, dict[int, int]] = defaultdict(dict)
        for row_id, order_id, net in self._session.execute(stmt).all():
            if net:
                applied[row_id][order_id] = int(net)
        return dict(applied)

    def events_for_row(self, row_id: int) -> list[ReconciliationEvent]:
        stmt = (
            select(ReconciliationEvent)
            .where(ReconciliationEvent.row_id == row_id)
            .order_by(ReconciliationEvent.id.asc())
        )
        return list(self._session.execute(stmt).scalars().all())
