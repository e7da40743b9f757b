"""
Station routing

Every OrderItem is prepared at exactly one station (kitchen, bar, pastry),
decided by its Menu's Category. The category id -> station table is built once
by StationRouter.from_session and passed around; nothing here string-matches
category names per request.
"""

import logging
from collections import OrderedDict
from datetime import date

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, func, select

from .clock import as_utc, day_bounds
from .errors import ValidationFailed
from .models import (
    Category,
    Menu,
    Order,
    OrderItem,
    OrderItemStatus,
    PaymentStatus,
    Station,
    StationTicket,
    StationTicketStatus,
    Table,
)
from .realtime import publish_event
from .stock import low_stock_count

logger = logging.getLogger(__name__)


def parse_station(value: str) -> Station:
    try:
        return Station(value.lower())
    except ValueError:
        raise ValidationFailed(
            "Invalid station type. Must be: kitchen, bar, or pastry",
            station=value,
        )


class StationRouter:
    def __init__(self, mapping: dict[int, Station]):
        self._mapping = dict(mapping)

    @classmethod
    def from_session(cls, session: Session) -> "StationRouter":
        """Map categories named Kitchen/Bar/Pastry (any case) to their station."""
        mapping: dict[int, Station] = {}
        for category in session.exec(select(Category)).all():
            try:
                mapping[category.id] = Station(category.name.strip().lower())
            except ValueError:
                logger.warning(f"Category {category.name!r} does not map to a station")
        logger.info(f"Station routing built for {len(mapping)} categories")
        return cls(mapping)

    def station_for_category(self, category_id: int | None) -> Station | None:
        if category_id is None:
            return None
        return self._mapping.get(category_id)

    def category_ids(self, station: Station) -> list[int]:
        return sorted(cid for cid, s in self._mapping.items() if s == station)


def assign_to_stations(session: Session, order: Order, router: StationRouter, publisher=None) -> int:
    """
    Create one StationTicket per item of a paid order.
    Items that already have a ticket are skipped, so re-running is safe.
    Returns the number of tickets created.
    """
    items = session.exec(select(OrderItem).where(OrderItem.order_id == order.id)).all()
    if not items:
        return 0

    existing = set(session.exec(
        select(StationTicket.order_item_id)
        .where(StationTicket.order_item_id.in_([item.id for item in items]))
    ).all())

    created: dict[Station, list[dict]] = {}
    for item in items:
        if item.id in existing:
            continue
        menu = session.get(Menu, item.menu_id)
        station = router.station_for_category(menu.category_id if menu else None)
        if station is None:
            logger.warning(f"Order item {item.id} (menu {item.menu_id}) has no station")
            continue
        session.add(StationTicket(order_id=order.id, order_item_id=item.id, station=station))
        created.setdefault(station, []).append({
            "id": item.id,
            "menu_name": menu.name,
            "quantity": item.quantity,
            "special_notes": item.special_notes,
        })

    if not created:
        return 0

    try:
        session.commit()
    except IntegrityError:
        # Another worker assigned the same items first
        session.rollback()
        logger.info(f"Station tickets for order {order.order_number} already assigned concurrently")
        return 0

    table = session.get(Table, order.table_id)
    for station, station_items in created.items():
        publish_event(
            publisher,
            {
                "type": "new_order",
                "station": station.value,
                "order_id": order.id,
                "order_number": order.order_number,
                "table_number": table.table_number if table else None,
                "items": station_items,
            },
            station=station.value,
        )

    count = sum(len(v) for v in created.values())
    logger.info(f"Order {order.order_number} assigned to stations: "
                f"{ {s.value: len(v) for s, v in created.items()} }")
    return count


def assign_pending_stations(session: Session, router: StationRouter, publisher=None) -> int:
    """Retry assignment for paid, open orders that still have items without a ticket."""
    statement = (
        select(Order)
        .join(OrderItem, OrderItem.order_id == Order.id)
        .outerjoin(StationTicket, StationTicket.order_item_id == OrderItem.id)
        .where(Order.payment_status == PaymentStatus.paid)
        .where(Order.completed_at == None)  # noqa: E711
        .where(StationTicket.id == None)  # noqa: E711
        .distinct()
    )
    orders = session.exec(statement).all()

    created = 0
    for order in orders:
        created += assign_to_stations(session, order, router, publisher)
    if created:
        logger.info(f"Assigned {created} pending station tickets")
    return created


def _station_items(session: Session, router: StationRouter, station: Station):
    category_ids = router.category_ids(station)
    statement = (
        select(OrderItem, Menu, Order, Table)
        .join(Menu, Menu.id == OrderItem.menu_id)
        .join(Order, Order.id == OrderItem.order_id)
        .join(Table, Table.id == Order.table_id)
        .where(Menu.category_id.in_(category_ids))
        .where(Order.payment_status == PaymentStatus.paid)
    )
    return category_ids, statement


def station_queue(
    session: Session,
    router: StationRouter,
    station: Station,
    status: OrderItemStatus | None = OrderItemStatus.pending,
    day: date | None = None,
) -> dict:
    """Paid order items for one station, grouped by table, oldest first."""
    category_ids, statement = _station_items(session, router, station)
    if not category_ids:
        return {"station_type": station.value, "total_orders": 0, "total_items": 0, "orders": []}

    if status is not None:
        statement = statement.where(OrderItem.status == status)
    if day is not None:
        start, end = day_bounds(day)
        statement = statement.where(OrderItem.created_at >= start).where(OrderItem.created_at < end)
    rows = session.exec(statement.order_by(OrderItem.created_at, OrderItem.id)).all()

    tickets = {}
    if rows:
        tickets = {
            t.order_item_id: t
            for t in session.exec(
                select(StationTicket).where(StationTicket.order_item_id.in_([r[0].id for r in rows]))
            ).all()
        }

    groups: "OrderedDict[int, dict]" = OrderedDict()
    for item, menu, order, table in rows:
        group = groups.get(table.id)
        if group is None:
            group = groups[table.id] = {
                "table_id": table.id,
                "table_number": table.table_number,
                "order_numbers": [],
                "first_order_created_at": as_utc(order.created_at).isoformat(),
                "items_count": 0,
                "items": [],
            }
        if order.order_number not in group["order_numbers"]:
            group["order_numbers"].append(order.order_number)
        ticket = tickets.get(item.id)
        group["items"].append({
            "id": item.id,
            "order_id": order.id,
            "order_number": order.order_number,
            "menu_id": menu.id,
            "menu_name": menu.name,
            "quantity": item.quantity,
            "status": item.status.value.lower(),
            "station_status": ticket.status.value if ticket else None,
            "special_notes": item.special_notes,
            "created_at": as_utc(item.created_at).isoformat(),
        })
        group["items_count"] += 1

    return {
        "station_type": station.value,
        "total_orders": len(groups),
        "total_items": len(rows),
        "orders": list(groups.values()),
    }


def station_stats(session: Session, router: StationRouter, station: Station, day: date) -> dict:
    category_ids, statement = _station_items(session, router, station)
    start, end = day_bounds(day)

    total = pending = done = 0
    active_orders: set[int] = set()
    if category_ids:
        rows = session.exec(
            statement.where(OrderItem.created_at >= start).where(OrderItem.created_at < end)
        ).all()
        for item, _menu, order, _table in rows:
            total += 1
            if item.status == OrderItemStatus.done:
                done += 1
            else:
                pending += 1
                active_orders.add(order.id)

    # Throughput from station tickets that were started and finished today
    durations = [
        (as_utc(t.completed_at) - as_utc(t.started_at)).total_seconds()
        for t in session.exec(
            select(StationTicket)
            .where(StationTicket.station == station)
            .where(StationTicket.status == StationTicketStatus.done)
            .where(StationTicket.started_at != None)  # noqa: E711
            .where(StationTicket.completed_at >= start)
            .where(StationTicket.completed_at < end)
        ).all()
    ]
    tickets_today = session.exec(
        select(func.count(StationTicket.id))
        .where(StationTicket.station == station)
        .where(StationTicket.created_at >= start)
        .where(StationTicket.created_at < end)
    ).one()

    return {
        "station_type": station.value,
        "date": day.isoformat(),
        "items": {
            "total": total,
            "pending": pending,
            "done": done,
            "completion_rate": round(done / total * 100, 2) if total else 0,
        },
        "active_orders": len(active_orders),
        "low_stock_items": low_stock_count(session, category_ids),
        "tickets": tickets_today,
        "avg_preparation_seconds": round(sum(durations) / len(durations), 1) if durations else None,
    }
