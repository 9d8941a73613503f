import argparse
import logging

from sqlalchemy.orm import Session

from floor_control.config import configure_logging, load_app_config
from floor_control.db import build_engine, build_session_factory, load_db_config
from floor_control.models import Base
from floor_control.reconciliation import ReconciliationCoordinator

logger = logging.getLogger(__name__)


def sweep_once(session: Session, dry_run: bool = False) -> dict:
    result = ReconciliationCoordinator(session).sweep(dry_run=dry_run)
    return {
        "orders_checked": result.orders_checked,
        "orders_corrected": 0 if dry_run else len(result.corrections),
        "orders_drifted": len(result.corrections),
        "rows_backfilled": result.rows_backfilled,
        "dry_run": dry_run,
    }


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Recompute order completed quantities from shift report rows.")
    parser.add_argument("--dry-run", action="store_true", help="report drift without correcting it")
    args = parser.parse_args(argv)

    configure_logging(load_app_config())

    # DB setup (same style as the API)
    config = load_db_config()
    engine = build_engine(config)
    Base.metadata.create_all(bind=engine)
    session_factory = build_session_factory(engine)

    with session_factory() as session:
        summary = sweep_once(session, dry_run=args.dry_run)

    print("CRON SUMMARY:", summary)


if __name__ == "__main__":
    main()
