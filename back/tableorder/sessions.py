"""
Session/Table Binder

A customer scans the QR code on a table, gets a session token bound to that
table, and orders with the token. Table status is informational: any number
of devices may hold sessions at the same table at once.
"""

import hashlib
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, func, select

from .clock import as_utc, utcnow
from .errors import SessionExpired, SessionNotFound, TableNotFound, ValidationFailed
from .models import Customer, DeviceInfo, Order, PaymentStatus, Table, TableStatus
from .settings import settings
from .views import order_detail

logger = logging.getLogger(__name__)

QR_PATTERN = re.compile(r"^QR_([1-9][0-9]{0,5})_([0-9]{9,12})$")


def session_window() -> timedelta:
    return timedelta(hours=settings.session_window_hours)


def new_session_token() -> str:
    return secrets.token_hex(16)


def parse_qr_value(value: str) -> tuple[int, datetime]:
    """Split a canonical QR value `QR_{table_number}_{unix_timestamp}`."""
    match = QR_PATTERN.match(value.strip()) if value else None
    if not match:
        raise ValidationFailed("Invalid QR code format", qr_code=value)
    table_number = int(match.group(1))
    issued_at = datetime.fromtimestamp(int(match.group(2)), tz=timezone.utc)
    return table_number, issued_at


def issue_qr_code(session: Session, table: Table, now: datetime | None = None) -> str:
    """Stamp a fresh canonical QR value on a table. Old printed codes stop resolving."""
    now = now or utcnow()
    table.qr_code = f"QR_{table.table_number}_{int(now.timestamp())}"
    table.qr_generated_at = now
    session.add(table)
    session.commit()
    session.refresh(table)
    logger.info(f"Issued QR code {table.qr_code} for table {table.table_number}")
    return table.qr_code


def resolve_device_id(
    header_device_id: str | None,
    body_device_id: str | None,
    user_agent: str | None,
    ip_address: str | None,
    device_info: DeviceInfo | None = None,
) -> str:
    """Client-supplied id wins (header, then body); otherwise fingerprint the request."""
    if header_device_id:
        return header_device_id
    if body_device_id:
        return body_device_id
    info = device_info or DeviceInfo()
    components = [
        user_agent or "",
        ip_address or "",
        "" if info.screen_width is None else str(info.screen_width),
        "" if info.screen_height is None else str(info.screen_height),
        info.timezone or "",
    ]
    return hashlib.md5("|".join(components).encode()).hexdigest()


@dataclass
class DeviceContext:
    device_id: str
    user_agent: str | None = None
    ip_address: str | None = None


@dataclass
class ScanResult:
    customer: Customer
    table: Table
    session_expires_at: datetime
    is_returning_customer: bool
    is_known_device: bool
    existing_orders: int = 0

    def as_dict(self) -> dict:
        return {
            "customer_uuid": self.customer.uuid,
            "session_token": self.customer.session_token,
            "table": {
                "id": self.table.id,
                "table_number": self.table.table_number,
                "status": self.table.status.value,
            },
            "session_expires_at": as_utc(self.session_expires_at).isoformat(),
            "is_returning_customer": self.is_returning_customer,
            "is_known_device": self.is_known_device,
            "existing_orders": self.existing_orders,
        }


def _active_orders_query(customer_id: int, now: datetime, table_id: int | None = None):
    statement = (
        select(Order)
        .where(Order.customer_id == customer_id)
        .where(Order.session_expires_at > now)
        .where(Order.payment_status != PaymentStatus.failed)
    )
    if table_id is not None:
        statement = statement.where(Order.table_id == table_id)
    return statement


def _get_or_create_customer(session: Session, device: DeviceContext, now: datetime) -> tuple[Customer, bool]:
    """Returns (customer, existed). Safe against two scans racing on one device id."""
    statement = select(Customer).where(Customer.device_id == device.device_id)
    customer = session.exec(statement).first()
    if customer is not None:
        return customer, True

    customer = Customer(
        device_id=device.device_id,
        session_token=new_session_token(),
        user_agent=device.user_agent,
        ip_address=device.ip_address,
        last_activity=now,
    )
    session.add(customer)
    try:
        session.flush()
    except IntegrityError:
        # Lost the insert race: the other request created the row
        session.rollback()
        customer = session.exec(statement).one()
        return customer, True
    return customer, False


def scan(session: Session, qr_value: str, device: DeviceContext, now: datetime | None = None) -> ScanResult:
    now = now or utcnow()
    parse_qr_value(qr_value)

    table = session.exec(select(Table).where(Table.qr_code == qr_value.strip())).first()
    if not table:
        raise TableNotFound("Invalid QR code - table not found", qr_code=qr_value)

    customer, existed = _get_or_create_customer(session, device, now)
    expires_at = now + session_window()

    active_orders = []
    if existed:
        active_orders = session.exec(_active_orders_query(customer.id, now, table.id)).all()

    # Every scan gets a new token, even a returning device
    if existed:
        customer.session_token = new_session_token()
    customer.last_activity = now
    customer.user_agent = device.user_agent
    customer.ip_address = device.ip_address
    customer.table_id = table.id
    session.add(customer)

    for order in active_orders:
        order.session_expires_at = expires_at
        session.add(order)

    table.status = TableStatus.occupied
    session.add(table)
    session.commit()
    session.refresh(customer)
    session.refresh(table)

    if active_orders:
        logger.info(f"Returning customer {customer.uuid} at table {table.table_number}, "
                    f"{len(active_orders)} active orders extended")
    else:
        logger.info(f"New session for customer {customer.uuid} at table {table.table_number}")

    return ScanResult(
        customer=customer,
        table=table,
        session_expires_at=expires_at,
        is_returning_customer=bool(active_orders),
        is_known_device=existed,
        existing_orders=len(active_orders),
    )


def _find_customer(session: Session, token: str) -> Customer:
    customer = session.exec(select(Customer).where(Customer.session_token == token)).first() if token else None
    if not customer:
        raise SessionNotFound("Session not found")
    return customer


def _session_expiry(session: Session, customer: Customer, now: datetime) -> tuple[datetime, bool]:
    """Returns (expires_at, has_active_order)."""
    expires_at = as_utc(customer.last_activity) + session_window()
    latest_order_expiry = session.exec(
        select(func.max(Order.session_expires_at))
        .where(Order.customer_id == customer.id)
        .where(Order.session_expires_at > now)
        .where(Order.payment_status != PaymentStatus.failed)
    ).one()
    if latest_order_expiry is None:
        return expires_at, False
    return max(expires_at, as_utc(latest_order_expiry)), True


def require_session(session: Session, token: str, now: datetime | None = None) -> Customer:
    """
    Resolve a token to its customer and refresh last_activity.
    The refresh is left to the caller's commit.
    """
    now = now or utcnow()
    customer = _find_customer(session, token)
    expires_at, has_active_order = _session_expiry(session, customer, now)
    if expires_at <= now and not has_active_order:
        raise SessionExpired("Session expired. Please scan the QR code again", expired_at=expires_at.isoformat())

    customer.last_activity = now
    session.add(customer)
    return customer


def describe_session(session: Session, token: str, now: datetime | None = None) -> dict:
    now = now or utcnow()
    customer = _find_customer(session, token)
    expires_at, has_active_order = _session_expiry(session, customer, now)
    table = session.get(Table, customer.table_id) if customer.table_id else None
    return {
        "customer_uuid": customer.uuid,
        "is_valid": expires_at > now or has_active_order,
        "expires_at": expires_at.isoformat(),
        "last_activity": as_utc(customer.last_activity).isoformat(),
        "table_number": table.table_number if table else None,
        "email": customer.email,
    }


def customer_history(session: Session, token: str, now: datetime | None = None) -> dict:
    """All orders of the token's customer, split into the current session and the past."""
    now = now or utcnow()
    customer = _find_customer(session, token)
    orders = session.exec(
        select(Order).where(Order.customer_id == customer.id).order_by(Order.created_at.desc(), Order.id.desc())
    ).all()

    current, past = [], []
    for order in orders:
        (current if as_utc(order.session_expires_at) > now else past).append(order_detail(order))

    total_spent = sum(float(o.total_amount) for o in orders if o.payment_status == PaymentStatus.paid)
    return {
        "customer_uuid": customer.uuid,
        "current_session_orders": current,
        "past_orders": past,
        "total_orders": len(orders),
        "total_spent": total_spent,
    }
