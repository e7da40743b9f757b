"""
Stock Ledger

Guards menu stock against overselling:
- check_stock validates a whole request and reports every failing line
- reserve_stock decrements with a conditional UPDATE inside the caller's
  transaction, so two concurrent orders can never take the same unit
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import update
from sqlmodel import Session, func, select

from .errors import StockInsufficient, StockRaceLost, ValidationFailed
from .models import Menu, Station

logger = logging.getLogger(__name__)


@dataclass
class StockLine:
    menu: Menu
    quantity: int


def _aggregate(requests: Iterable[tuple[int, int]]) -> dict[int, int]:
    wanted: dict[int, int] = {}
    for menu_id, quantity in requests:
        if quantity is None or quantity < 1:
            raise ValidationFailed("Quantity must be at least 1", menu_id=menu_id, quantity=quantity)
        wanted[menu_id] = wanted.get(menu_id, 0) + quantity
    if not wanted:
        raise ValidationFailed("Order must have at least one item")
    return wanted


def check_stock(session: Session, requests: Iterable[tuple[int, int]]) -> list[StockLine]:
    """
    Validate (menu_id, quantity) requests against current stock.
    Quantities for the same menu are summed. Nothing is written.
    Raises StockInsufficient listing every failing menu plus the stock of the ones that passed.
    """
    wanted = _aggregate(requests)

    menus = session.exec(select(Menu).where(Menu.id.in_(list(wanted)))).all()
    by_id = {menu.id: menu for menu in menus}
    missing = sorted(set(wanted) - set(by_id))
    if missing:
        raise ValidationFailed("Unknown menu items", menu_ids=missing)

    lines: list[StockLine] = []
    stock_errors: list[dict] = []
    for menu_id, quantity in wanted.items():
        menu = by_id[menu_id]
        if not menu.is_available:
            stock_errors.append({
                "menu_id": menu.id,
                "menu_name": menu.name,
                "requested": quantity,
                "available": 0,
                "reason": "unavailable",
            })
        elif menu.stock_quantity < quantity:
            stock_errors.append({
                "menu_id": menu.id,
                "menu_name": menu.name,
                "requested": quantity,
                "available": menu.stock_quantity,
                "reason": "insufficient_stock",
            })
        else:
            lines.append(StockLine(menu=menu, quantity=quantity))

    if stock_errors:
        available_items = [
            {"menu_id": line.menu.id, "menu_name": line.menu.name, "available_stock": line.menu.stock_quantity}
            for line in lines
        ]
        raise StockInsufficient(stock_errors, available_items)

    return lines


def reserve_stock(session: Session, lines: list[StockLine]) -> None:
    """
    Decrement stock for validated lines. Must run in the same transaction that
    writes the order; rolls nothing back itself.
    """
    # Fixed lock order so concurrent multi-item orders cannot deadlock
    for line in sorted(lines, key=lambda l: l.menu.id):
        result = session.exec(
            update(Menu)
            .where(Menu.id == line.menu.id)
            .where(Menu.stock_quantity >= line.quantity)
            .values(stock_quantity=Menu.stock_quantity - line.quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StockRaceLost(line.menu.id, line.quantity)
        session.expire(line.menu, ["stock_quantity"])


def restock(
    session: Session,
    menu_id: int,
    *,
    station: Station | None = None,
    router=None,
    stock_quantity: int | None = None,
    minimum_stock: int | None = None,
    is_available: bool | None = None,
) -> tuple[Menu, dict]:
    """Staff stock edit. When a station is given the menu must belong to it."""
    menu = session.get(Menu, menu_id)
    if not menu:
        raise ValidationFailed("Menu not found", menu_id=menu_id)

    if station is not None and router is not None:
        menu_station = router.station_for_category(menu.category_id)
        if menu_station != station:
            owner = menu_station.value if menu_station else "no"
            raise ValidationFailed(
                f"This menu belongs to {owner} station, not {station.value}",
                menu_id=menu_id,
            )

    updated: dict = {}
    if stock_quantity is not None:
        if stock_quantity < 0:
            raise ValidationFailed("stock_quantity must be >= 0", menu_id=menu_id)
        menu.stock_quantity = stock_quantity
        updated["stock_quantity"] = stock_quantity
    if minimum_stock is not None:
        if minimum_stock < 0:
            raise ValidationFailed("minimum_stock must be >= 0", menu_id=menu_id)
        menu.minimum_stock = minimum_stock
        updated["minimum_stock"] = minimum_stock
    if is_available is not None:
        menu.is_available = is_available
        updated["is_available"] = is_available

    session.add(menu)
    session.commit()
    session.refresh(menu)
    logger.info(f"Menu {menu.id} stock updated: {updated}")
    return menu, updated


def low_stock_count(session: Session, category_ids: list[int]) -> int:
    if not category_ids:
        return 0
    return session.exec(
        select(func.count(Menu.id))
        .where(Menu.category_id.in_(category_ids))
        .where(Menu.stock_quantity <= Menu.minimum_stock)
        .where(Menu.is_available == True)  # noqa: E712
    ).one()
