"""
Session expiry sweep.

Fails Pending orders whose session window has passed, frees tables nobody is
using anymore, purges idle customers and retries station assignment for paid
orders that missed it. Meant to be run by a scheduler.

Usage:
    python -m tableorder.sweeper
    python -m tableorder.sweeper --retention-hours 48
"""

import argparse
import json
import logging
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlmodel import Session, select

from .clock import utcnow
from .models import Customer, Order, PaymentStatus
from .orders import mark_failed, release_table_if_idle
from .settings import settings
from .stations import StationRouter, assign_pending_stations

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired_orders: list[str] = field(default_factory=list)
    tables_freed: list[int] = field(default_factory=list)
    customers_purged: int = 0
    stations_assigned: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def sweep_expired_sessions(
    session: Session,
    now: datetime | None = None,
    retention_hours: int | None = None,
    router: StationRouter | None = None,
    publisher=None,
) -> SweepReport:
    now = now or utcnow()
    retention = timedelta(hours=retention_hours if retention_hours is not None else settings.customer_retention_hours)
    report = SweepReport()

    expired_ids = session.exec(
        select(Order.id)
        .where(Order.payment_status == PaymentStatus.pending)
        .where(Order.session_expires_at < now)
        .order_by(Order.id)
    ).all()

    touched_tables: set[int] = set()
    for order_id in expired_ids:
        order = session.get(Order, order_id)
        # Guarded on Pending and expiry: a payment or a rescan landing at the same moment wins
        if mark_failed(session, order, expired_before=now):
            report.expired_orders.append(order.order_number)
            touched_tables.add(order.table_id)
        session.commit()

    for table_id in sorted(touched_tables):
        if release_table_if_idle(session, table_id, now):
            report.tables_freed.append(table_id)
    session.commit()

    idle_customers = session.exec(select(Customer).where(Customer.last_activity < now - retention)).all()
    for customer in idle_customers:
        active = session.exec(
            select(Order.id)
            .where(Order.customer_id == customer.id)
            .where(Order.session_expires_at > now)
            .where(Order.payment_status != PaymentStatus.failed)
        ).first()
        if active is not None:
            continue
        # Orders are kept forever; only the link to the customer goes
        session.exec(
            update(Order)
            .where(Order.customer_id == customer.id)
            .values(customer_id=None)
            .execution_options(synchronize_session=False)
        )
        session.delete(customer)
        report.customers_purged += 1
    session.commit()

    if router is not None:
        report.stations_assigned = assign_pending_stations(session, router, publisher)

    logger.info(
        f"Sweep done: {len(report.expired_orders)} orders failed, "
        f"{len(report.tables_freed)} tables freed, {report.customers_purged} customers purged, "
        f"{report.stations_assigned} station tickets assigned"
    )
    return report


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="Expire stale order sessions and purge idle customers")
    parser.add_argument(
        "--retention-hours",
        type=int,
        default=None,
        help=f"Purge customers idle longer than this (default: {settings.customer_retention_hours})",
    )
    args = parser.parse_args()

    from .db import engine
    from .realtime import RedisPublisher

    try:
        with Session(engine) as session:
            router = StationRouter.from_session(session)
            report = sweep_expired_sessions(
                session,
                retention_hours=args.retention_hours,
                router=router,
                publisher=RedisPublisher(),
            )
    except Exception as e:
        logger.error(f"Sweep failed: {e}", exc_info=True)
        sys.exit(1)

    print(json.dumps(report.as_dict(), indent=2))


if __name__ == "__main__":
    main()
