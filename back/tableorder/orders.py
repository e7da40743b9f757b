"""
Order State Machine

Pending -> Paid -> (items Done) -> completed_at set
Pending -> Failed (session expiry or cashier cancel)

Every transition is a conditional UPDATE on the expected current state, so
concurrent requests can never apply the same transition twice.
"""

import logging
import random
import re
import time
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, select

from .clock import as_utc, business_day, day_bounds, utcnow
from .config_store import PricingConfig
from .email_service import ORDER_CONFIRMATION, PAYMENT_RECEIPT
from .errors import (
    AlreadyCompleted,
    AlreadyPaid,
    InvalidTransition,
    ItemsNotAllDone,
    NotYetPaid,
    OrderingError,
    OrderItemNotFound,
    OrderNotFound,
    StockRaceLost,
    TableNotFound,
    ValidationFailed,
)
from .models import (
    Menu,
    Order,
    OrderItem,
    OrderItemCreate,
    OrderItemStatus,
    OrderSequence,
    PaymentLog,
    PaymentLogStatus,
    PaymentStatus,
    StationTicket,
    StationTicketStatus,
    Table,
    TableStatus,
)
from .pricing import PricingBreakdown, calculate_breakdown, items_subtotal, round2, to_decimal
from .realtime import publish_event
from .sessions import require_session, session_window
from .settings import settings
from .stations import StationRouter, assign_to_stations
from .stock import check_stock, reserve_stock
from .views import derive_status, order_view

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class OrderPlacement:
    order: Order
    breakdown: PricingBreakdown
    table_number: int
    items_count: int
    email_sent: bool

    def as_dict(self) -> dict:
        return {
            "order_uuid": self.order.order_uuid,
            "order_number": self.order.order_number,
            "breakdown": self.breakdown.as_dict(),
            "items_count": self.items_count,
            "table_number": self.table_number,
            "email_sent": self.email_sent,
            "payment_status": self.order.payment_status.value,
            "session_expires_at": as_utc(self.order.session_expires_at).isoformat(),
        }


@dataclass
class PaymentFollowUp:
    """Best-effort side effects after a payment commit."""
    stations_assigned: bool
    email_sent: bool


@dataclass
class ItemCompletion:
    item: OrderItem
    order: Order
    order_completed: bool


def _backoff(attempt: int) -> float:
    return min(0.5, 0.02 * 2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


def _check_items(items: list[OrderItemCreate]) -> None:
    if not items:
        raise ValidationFailed("Order must have at least one item")
    for item in items:
        if item.quantity is None or item.quantity < 1:
            raise ValidationFailed("Quantity must be at least 1", menu_id=item.menu_id)
        if item.special_notes and len(item.special_notes) > 500:
            raise ValidationFailed("Special notes are limited to 500 characters", menu_id=item.menu_id)


def preview_order(session: Session, pricing_config: PricingConfig, items: list[OrderItemCreate]) -> dict:
    """Price a cart without touching stock or writing anything."""
    _check_items(items)
    menu_ids = {item.menu_id for item in items}
    menus = {m.id: m for m in session.exec(select(Menu).where(Menu.id.in_(menu_ids))).all()}
    missing = sorted(menu_ids - set(menus))
    if missing:
        raise ValidationFailed("Unknown menu items", menu_ids=missing)

    details = []
    for item in items:
        menu = menus[item.menu_id]
        details.append({
            "menu_id": menu.id,
            "menu_name": menu.name,
            "price": float(menu.price),
            "quantity": item.quantity,
            "subtotal": float(round2(to_decimal(menu.price) * item.quantity)),
            "available": menu.is_available and menu.stock_quantity >= item.quantity,
        })

    service_charge_rate, tax_rate = pricing_config.rates()
    subtotal = items_subtotal((menus[item.menu_id].price, item.quantity) for item in items)
    breakdown = calculate_breakdown(subtotal, service_charge_rate, tax_rate)
    return {"items": details, "breakdown": breakdown.as_dict()}


def next_order_number(session: Session, now: datetime) -> str:
    """
    ORD-YYYYMMDD-NNN from the per-day counter row.
    The increment is a single UPDATE, so it holds the row lock until the order commits.
    A concurrent first insert for a new day raises IntegrityError and is retried by the caller.
    """
    day = business_day(now)
    result = session.exec(
        update(OrderSequence)
        .where(OrderSequence.day == day)
        .values(last_value=OrderSequence.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        session.add(OrderSequence(day=day, last_value=1))
        session.flush()
        value = 1
    else:
        value = session.exec(select(OrderSequence.last_value).where(OrderSequence.day == day)).one()
    return f"ORD-{day}-{value:03d}"


def _create_order(
    session: Session,
    rates: tuple,
    token: str,
    items: list[OrderItemCreate],
    email: str | None,
    notes: str | None,
    now: datetime,
) -> tuple[Order, PricingBreakdown, Table]:
    customer = require_session(session, token, now)
    if email:
        customer.email = email
        session.add(customer)

    table = session.get(Table, customer.table_id) if customer.table_id else None
    if not table:
        raise TableNotFound("Table not found for this session. Please scan the QR code again")

    lines = check_stock(session, [(item.menu_id, item.quantity) for item in items])
    menus = {line.menu.id: line.menu for line in lines}
    prices = {menu_id: to_decimal(menu.price) for menu_id, menu in menus.items()}

    service_charge_rate, tax_rate = rates
    subtotal = items_subtotal((prices[item.menu_id], item.quantity) for item in items)
    breakdown = calculate_breakdown(subtotal, service_charge_rate, tax_rate)

    reserve_stock(session, lines)

    order = Order(
        order_number=next_order_number(session, now),
        customer_id=customer.id,
        table_id=table.id,
        subtotal=breakdown.subtotal,
        service_charge_rate=breakdown.service_charge_rate,
        service_charge_amount=breakdown.service_charge_amount,
        tax_rate=breakdown.tax_rate,
        tax_amount=breakdown.tax_amount,
        total_amount=breakdown.total,
        notes=notes,
        session_expires_at=now + session_window(),
        created_at=now,
    )
    session.add(order)
    session.flush()

    for item in items:
        price = prices[item.menu_id]
        session.add(OrderItem(
            order_id=order.id,
            menu_id=item.menu_id,
            quantity=item.quantity,
            price=price,
            subtotal=round2(price * item.quantity),
            special_notes=item.special_notes,
            created_at=now,
        ))

    session.commit()
    session.refresh(order)
    return order, breakdown, table


def place_order(
    session: Session,
    pricing_config: PricingConfig,
    notifier,
    token: str,
    items: list[OrderItemCreate],
    email: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> OrderPlacement:
    """
    Create a Pending order: session check, stock reservation, frozen pricing and
    order number in one transaction. Contention (lost stock race, duplicate
    counter row, lock timeouts) is retried with jittered backoff.
    """
    now = now or utcnow()
    _check_items(items)
    if email and not EMAIL_PATTERN.match(email):
        raise ValidationFailed("Invalid email address", email=email)

    # Rates are read once, before the transaction starts
    rates = pricing_config.rates()
    max_attempts = max(1, settings.order_create_max_attempts)
    for attempt in range(1, max_attempts + 1):
        try:
            order, breakdown, table = _create_order(session, rates, token, items, email, notes, now)
            break
        except (IntegrityError, OperationalError, StockRaceLost) as e:
            session.rollback()
            if attempt == max_attempts:
                logger.error(f"Order creation gave up after {attempt} attempts: {e}")
                raise
            logger.warning(f"Order creation contention (attempt {attempt}/{max_attempts}): {e}")
            time.sleep(_backoff(attempt))
        except OrderingError:
            session.rollback()
            raise

    logger.info(f"Order {order.order_number} created for table {table.table_number}, total {breakdown.total}")

    email_sent = False
    if notifier is not None:
        email_sent = notifier.send(ORDER_CONFIRMATION, order)
        if not email_sent:
            logger.warning(f"Order confirmation for {order.order_number} was not sent")

    return OrderPlacement(
        order=order,
        breakdown=breakdown,
        table_number=table.table_number,
        items_count=len(items),
        email_sent=email_sent,
    )


def get_order(session: Session, order_id: int | None = None, order_uuid: str | None = None) -> Order:
    order = None
    if order_id is not None:
        order = session.get(Order, order_id)
    elif order_uuid:
        order = session.exec(select(Order).where(Order.order_uuid == order_uuid)).first()
    if not order:
        raise OrderNotFound("Order not found", order_id=order_id, order_uuid=order_uuid)
    return order


def _lock_order(session: Session, order_id: int) -> Order:
    order = session.exec(select(Order).where(Order.id == order_id).with_for_update()).first()
    if not order:
        raise OrderNotFound("Order not found", order_id=order_id)
    return order


def mark_paid(session: Session, order: Order, reference: str, now: datetime) -> Order:
    """Pending -> Paid. The caller commits."""
    result = session.exec(
        update(Order)
        .where(Order.id == order.id)
        .where(Order.payment_status == PaymentStatus.pending)
        .values(payment_status=PaymentStatus.paid, paid_at=now, payment_reference=reference)
        .execution_options(synchronize_session=False)
    )
    session.refresh(order)
    if result.rowcount != 1:
        if order.payment_status == PaymentStatus.paid:
            raise AlreadyPaid("Order already paid", order_number=order.order_number)
        raise InvalidTransition(
            f"Order is {order.payment_status.value} and cannot be paid",
            order_number=order.order_number,
        )
    return order


def mark_failed(session: Session, order: Order, expired_before: datetime | None = None) -> bool:
    """
    Pending -> Failed. Returns False when the order left Pending first, or when
    `expired_before` is given and the session was extended past it. The caller commits.
    """
    statement = (
        update(Order)
        .where(Order.id == order.id)
        .where(Order.payment_status == PaymentStatus.pending)
    )
    if expired_before is not None:
        statement = statement.where(Order.session_expires_at < expired_before)
    result = session.exec(
        statement
        .values(payment_status=PaymentStatus.failed)
        .execution_options(synchronize_session=False)
    )
    session.refresh(order)
    return result.rowcount == 1


def record_payment_log(
    session: Session,
    order: Order,
    transaction_id: str | None,
    status: PaymentLogStatus,
    response_data: dict | None = None,
) -> PaymentLog:
    """
    Keep one log row per real transaction: update the row for the same
    transaction id, else the latest Pending/Failed row, else insert.
    """
    log = None
    if transaction_id:
        log = session.exec(
            select(PaymentLog)
            .where(PaymentLog.order_id == order.id)
            .where(PaymentLog.transaction_id == transaction_id)
        ).first()
    if log is None:
        log = session.exec(
            select(PaymentLog)
            .where(PaymentLog.order_id == order.id)
            .where(PaymentLog.status.in_([PaymentLogStatus.pending, PaymentLogStatus.failed]))
            .order_by(PaymentLog.created_at.desc(), PaymentLog.id.desc())
        ).first()
    if log is None:
        log = PaymentLog(order_id=order.id, amount=order.total_amount)

    log.transaction_id = transaction_id or log.transaction_id
    log.status = status
    log.response_data = response_data
    session.add(log)
    return log


def release_table_if_idle(session: Session, table_id: int, now: datetime) -> bool:
    """Set a table Free unless another order still holds a live session on it."""
    still_active = session.exec(
        select(Order.id)
        .where(Order.table_id == table_id)
        .where(Order.session_expires_at > now)
        .where(Order.payment_status != PaymentStatus.failed)
    ).first()
    if still_active is not None:
        return False
    table = session.get(Table, table_id)
    if table is None or table.status == TableStatus.free:
        return False
    table.status = TableStatus.free
    session.add(table)
    return True


def after_payment(session: Session, order: Order, router: StationRouter | None, notifier, publisher) -> PaymentFollowUp:
    """Station assignment, receipt email and table fan-out. Never undoes the payment."""
    stations_assigned = False
    if router is not None:
        try:
            assign_to_stations(session, order, router, publisher)
            stations_assigned = True
        except Exception:
            # Retried later by assign_pending_stations
            session.rollback()
            logger.error(f"Station assignment failed for order {order.order_number}", exc_info=True)

    email_sent = False
    if notifier is not None:
        email_sent = notifier.send(PAYMENT_RECEIPT, order)

    publish_event(
        publisher,
        {"type": "order_paid", "order_id": order.id, "order_number": order.order_number},
        table_id=order.table_id,
    )
    return PaymentFollowUp(stations_assigned=stations_assigned, email_sent=email_sent)


def validate_cash_payment(
    session: Session,
    order_id: int,
    notifier=None,
    publisher=None,
    router: StationRouter | None = None,
    now: datetime | None = None,
) -> tuple[Order, PaymentFollowUp]:
    """Cashier confirms cash was received."""
    now = now or utcnow()
    order = _lock_order(session, order_id)
    reference = f"CASH-{order.order_number}"
    try:
        mark_paid(session, order, reference, now)
    except OrderingError:
        session.rollback()
        raise
    record_payment_log(session, order, reference, PaymentLogStatus.success, {"method": "cash"})
    session.commit()
    session.refresh(order)
    logger.info(f"Cash payment validated for order {order.order_number}")

    return order, after_payment(session, order, router, notifier, publisher)


def cancel_cash_order(session: Session, order_id: int, now: datetime | None = None) -> Order:
    """
    Pending -> Failed by the cashier. Reserved stock is not returned.
    """
    now = now or utcnow()
    order = _lock_order(session, order_id)
    if not mark_failed(session, order):
        session.rollback()
        if order.payment_status == PaymentStatus.paid:
            raise AlreadyPaid("Paid orders cannot be cancelled", order_number=order.order_number)
        raise InvalidTransition("Order is already cancelled", order_number=order.order_number)
    record_payment_log(session, order, None, PaymentLogStatus.failed, {"method": "cash", "reason": "cancelled"})
    release_table_if_idle(session, order.table_id, now)
    session.commit()
    session.refresh(order)
    logger.info(f"Order {order.order_number} cancelled by cashier")
    return order


def _auto_complete(session: Session, order_id: int, now: datetime) -> bool:
    """Set completed_at once, only when the order is Paid and no item is still pending."""
    pending_items = (
        select(OrderItem.id)
        .where(OrderItem.order_id == order_id)
        .where(OrderItem.status != OrderItemStatus.done)
        .exists()
    )
    result = session.exec(
        update(Order)
        .where(Order.id == order_id)
        .where(Order.completed_at == None)  # noqa: E711
        .where(Order.payment_status == PaymentStatus.paid)
        .where(~pending_items)
        .values(completed_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def complete_item(
    session: Session,
    item_id: int,
    publisher=None,
    now: datetime | None = None,
) -> ItemCompletion:
    now = now or utcnow()
    item = session.get(OrderItem, item_id)
    if not item:
        raise OrderItemNotFound("Order item not found", item_id=item_id)

    # Serializes item completions of one order so the last one always sees the others
    order = _lock_order(session, item.order_id)
    if order.payment_status != PaymentStatus.paid:
        session.rollback()
        raise NotYetPaid("Cannot update status. Order is not Paid yet.", order_number=order.order_number)

    result = session.exec(
        update(OrderItem)
        .where(OrderItem.id == item_id)
        .where(OrderItem.status == OrderItemStatus.pending)
        .values(status=OrderItemStatus.done, completed_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        raise InvalidTransition("Item is already done", item_id=item_id)

    session.exec(
        update(StationTicket)
        .where(StationTicket.order_item_id == item_id)
        .where(StationTicket.status != StationTicketStatus.done)
        .values(status=StationTicketStatus.done, completed_at=now)
        .execution_options(synchronize_session=False)
    )
    order_completed = _auto_complete(session, order.id, now)
    session.commit()
    session.refresh(item)
    session.refresh(order)

    ticket = session.exec(select(StationTicket).where(StationTicket.order_item_id == item_id)).first()
    event = {"type": "item_done", "item_id": item.id, "order_id": order.id, "order_number": order.order_number}
    publish_event(publisher, event, station=ticket.station.value if ticket else None, table_id=order.table_id)
    if order_completed:
        logger.info(f"Order {order.order_number} completed")
        publish_event(
            publisher,
            {"type": "order_completed", "order_id": order.id, "order_number": order.order_number},
            table_id=order.table_id,
        )

    return ItemCompletion(item=item, order=order, order_completed=order_completed)


def complete_items(
    session: Session,
    item_ids: list[int],
    publisher=None,
    now: datetime | None = None,
) -> dict:
    """Batch Done. Items that cannot move are skipped with the reason, the rest still apply."""
    now = now or utcnow()
    updated: list[int] = []
    skipped: list[dict] = []
    completed_orders: list[str] = []
    for item_id in dict.fromkeys(item_ids):
        try:
            completion = complete_item(session, item_id, publisher, now)
        except OrderingError as e:
            session.rollback()
            skipped.append({"id": item_id, "reason": e.kind, "message": e.message})
            continue
        updated.append(item_id)
        if completion.order_completed:
            completed_orders.append(completion.order.order_number)

    return {
        "updated_count": len(updated),
        "updated": updated,
        "skipped": skipped,
        "completed_orders": completed_orders,
    }


def start_item(session: Session, item_id: int, now: datetime | None = None) -> StationTicket:
    """Station picks up an item: ticket pending -> in_progress."""
    now = now or utcnow()
    item = session.get(OrderItem, item_id)
    if not item:
        raise OrderItemNotFound("Order item not found", item_id=item_id)
    order = session.get(Order, item.order_id)
    if order.payment_status != PaymentStatus.paid:
        raise NotYetPaid("Cannot start item. Order is not Paid yet.", order_number=order.order_number)

    ticket = session.exec(select(StationTicket).where(StationTicket.order_item_id == item_id)).first()
    if ticket is None:
        raise InvalidTransition("Item has not been assigned to a station yet", item_id=item_id)

    result = session.exec(
        update(StationTicket)
        .where(StationTicket.id == ticket.id)
        .where(StationTicket.status == StationTicketStatus.pending)
        .values(status=StationTicketStatus.in_progress, started_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        raise InvalidTransition(f"Item is already {ticket.status.value}", item_id=item_id)
    session.commit()
    session.refresh(ticket)
    return ticket


def complete_order(session: Session, order_id: int, publisher=None, now: datetime | None = None) -> Order:
    """Cashier override: requires Paid and every item Done."""
    now = now or utcnow()
    order = _lock_order(session, order_id)
    try:
        if order.completed_at:
            raise AlreadyCompleted("Order already completed", order_number=order.order_number)
        if order.payment_status != PaymentStatus.paid:
            raise NotYetPaid("Cannot complete unpaid order", order_number=order.order_number)
        pending = [item.id for item in order.items if item.status != OrderItemStatus.done]
        if pending:
            raise ItemsNotAllDone(
                "Cannot complete order. Some items are still being prepared",
                pending_item_ids=pending,
            )
        if not _auto_complete(session, order.id, now):
            raise AlreadyCompleted("Order already completed", order_number=order.order_number)
    except OrderingError:
        session.rollback()
        raise

    session.commit()
    session.refresh(order)
    logger.info(f"Order {order.order_number} marked completed by cashier")
    publish_event(
        publisher,
        {"type": "order_completed", "order_id": order.id, "order_number": order.order_number},
        table_id=order.table_id,
    )
    return order


def list_orders(
    session: Session,
    payment_status: PaymentStatus | None = None,
    table_id: int | None = None,
    status: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    exclude_completed: bool = False,
    exclude_ready: bool = False,
) -> list[dict]:
    """Cashier order list, newest first. Failed orders are hidden unless asked for."""
    statement = select(Order)
    if payment_status is not None:
        statement = statement.where(Order.payment_status == payment_status)
    else:
        statement = statement.where(Order.payment_status != PaymentStatus.failed)
    if table_id is not None:
        statement = statement.where(Order.table_id == table_id)
    if date_from is not None:
        statement = statement.where(Order.created_at >= day_bounds(date_from)[0])
    if date_to is not None:
        statement = statement.where(Order.created_at < day_bounds(date_to)[1])
    if exclude_completed:
        statement = statement.where(Order.completed_at == None)  # noqa: E711
    if status == "completed":
        statement = statement.where(Order.completed_at != None)  # noqa: E711
    elif status is not None:
        statement = statement.where(Order.completed_at == None)  # noqa: E711

    orders = session.exec(statement.order_by(Order.created_at.desc(), Order.id.desc())).all()

    views = []
    for order in orders:
        derived = derive_status(order)
        if status is not None and derived != status:
            continue
        if exclude_ready and derived in ("ready", "completed"):
            continue
        views.append(order_view(order))
    return views
