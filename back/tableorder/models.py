from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, DateTime, Numeric
from sqlmodel import Field, Relationship, SQLModel


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ts(**kwargs: Any) -> Any:
    """Timezone-aware timestamp column."""
    return Field(sa_type=DateTime(timezone=True), **kwargs)


class TableStatus(str, Enum):
    free = "Free"
    occupied = "Occupied"  # Display only, never a lock


class PaymentStatus(str, Enum):
    pending = "Pending"
    paid = "Paid"
    failed = "Failed"


class OrderItemStatus(str, Enum):
    pending = "Pending"
    done = "Done"


class Station(str, Enum):
    kitchen = "kitchen"
    bar = "bar"
    pastry = "pastry"


class StationTicketStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    done = "done"


class PaymentLogStatus(str, Enum):
    pending = "Pending"
    success = "Success"
    failed = "Failed"


class Category(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)  # "Kitchen", "Bar", "Pastry" double as station keys
    description: str | None = None
    display_order: int = Field(default=0)
    is_active: bool = Field(default=True)

    menus: list["Menu"] = Relationship(back_populates="category")


class Menu(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    category_id: int = Field(foreign_key="category.id", index=True)
    name: str
    description: str | None = None
    price: Decimal = Field(sa_type=Numeric(12, 2))
    stock_quantity: int = Field(default=0)
    minimum_stock: int = Field(default=0)  # Reorder threshold, display only
    is_available: bool = Field(default=True)
    preparation_time: int | None = None  # Minutes
    display_order: int = Field(default=0)

    category: Category | None = Relationship(back_populates="menus")


class Table(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    table_number: int = Field(unique=True, index=True)
    qr_code: str | None = Field(default=None, unique=True, index=True)  # QR_{table_number}_{timestamp}
    status: TableStatus = Field(default=TableStatus.free)
    qr_generated_at: datetime | None = _ts(default=None)


class Customer(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    uuid: str = Field(default_factory=lambda: str(uuid4()), unique=True, index=True)
    device_id: str = Field(unique=True, index=True)
    session_token: str = Field(unique=True, index=True)
    email: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None
    table_id: int | None = Field(default=None, foreign_key="table.id")  # Table of the latest scan
    last_activity: datetime = _ts(default_factory=_now, index=True)
    created_at: datetime = _ts(default_factory=_now)


class Order(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_uuid: str = Field(default_factory=lambda: str(uuid4()), unique=True, index=True)
    order_number: str = Field(unique=True, index=True)  # ORD-YYYYMMDD-NNN
    customer_id: int | None = Field(default=None, foreign_key="customer.id", index=True)
    table_id: int = Field(foreign_key="table.id", index=True)

    # Pricing, frozen at creation
    subtotal: Decimal = Field(sa_type=Numeric(12, 2))
    service_charge_rate: Decimal = Field(sa_type=Numeric(6, 4))
    service_charge_amount: Decimal = Field(sa_type=Numeric(12, 2))
    tax_rate: Decimal = Field(sa_type=Numeric(6, 4))
    tax_amount: Decimal = Field(sa_type=Numeric(12, 2))
    total_amount: Decimal = Field(sa_type=Numeric(12, 2))

    payment_status: PaymentStatus = Field(default=PaymentStatus.pending, index=True)
    payment_reference: str | None = None  # Gateway transaction id or CASH-{order_number}
    notes: str | None = None

    paid_at: datetime | None = _ts(default=None)
    completed_at: datetime | None = _ts(default=None)
    session_expires_at: datetime = _ts(index=True)
    created_at: datetime = _ts(default_factory=_now)

    items: list["OrderItem"] = Relationship(back_populates="order")
    customer: Customer | None = Relationship()
    table: Table = Relationship()


class OrderItem(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    menu_id: int = Field(foreign_key="menu.id")
    quantity: int
    price: Decimal = Field(sa_type=Numeric(12, 2))  # Snapshot of menu price at order time
    subtotal: Decimal = Field(sa_type=Numeric(12, 2))
    status: OrderItemStatus = Field(default=OrderItemStatus.pending, index=True)
    special_notes: str | None = None
    completed_at: datetime | None = _ts(default=None)
    created_at: datetime = _ts(default_factory=_now)

    order: Order = Relationship(back_populates="items")
    menu: Menu = Relationship()


class StationTicket(SQLModel, table=True):
    """Per-item work record at a station (start/complete timestamps for throughput)."""
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    order_item_id: int = Field(foreign_key="orderitem.id", unique=True)
    station: Station = Field(index=True)
    status: StationTicketStatus = Field(default=StationTicketStatus.pending, index=True)
    started_at: datetime | None = _ts(default=None)
    completed_at: datetime | None = _ts(default=None)
    created_at: datetime = _ts(default_factory=_now)


class OrderSequence(SQLModel, table=True):
    """Per-day order number counter."""
    day: str = Field(primary_key=True)  # YYYYMMDD
    last_value: int = Field(default=0)


class PaymentReconciliation(SQLModel, table=True):
    """Machine state of gateway notifications, one row per order."""
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", unique=True)
    transaction_id: str | None = None
    last_transaction_status: str | None = None
    last_fraud_status: str | None = None
    outcome: PaymentStatus = Field(default=PaymentStatus.pending)
    notification_count: int = Field(default=0)
    requires_review: bool = Field(default=False)  # Money captured on a failed order
    updated_at: datetime = _ts(default_factory=_now)


class PaymentLog(SQLModel, table=True):
    """Human-auditable payment trail."""
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    amount: Decimal = Field(sa_type=Numeric(12, 2))
    transaction_id: str | None = Field(default=None, index=True)
    status: PaymentLogStatus = Field(default=PaymentLogStatus.pending)
    response_data: dict | None = Field(default=None, sa_type=JSON)
    created_at: datetime = _ts(default_factory=_now)


class Setting(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    key: str = Field(unique=True, index=True)
    value: str
    type: str = Field(default="string")  # string, integer, decimal, boolean, json
    description: str | None = None
    is_editable: bool = Field(default=True)
    category: str | None = None
    updated_at: datetime = _ts(default_factory=_now)


# Request/Response Models
class DeviceInfo(SQLModel):
    screen_width: int | None = None
    screen_height: int | None = None
    timezone: str | None = None


class QRScanRequest(SQLModel):
    qr_code: str
    device_id: str | None = None
    device_info: DeviceInfo | None = None


class OrderItemCreate(SQLModel):
    menu_id: int
    quantity: int
    special_notes: str | None = None


class OrderCreate(SQLModel):
    session_token: str
    email: str | None = None
    items: list[OrderItemCreate]
    notes: str | None = None


class OrderPreviewRequest(SQLModel):
    items: list[OrderItemCreate]


class CheckoutRequest(SQLModel):
    order_uuid: str


class ItemBatchDone(SQLModel):
    item_ids: list[int]


class MenuStockUpdate(SQLModel):
    stock_quantity: int | None = None
    minimum_stock: int | None = None
    is_available: bool | None = None


class PricingUpdate(SQLModel):
    service_charge_rate: Decimal | None = None
    tax_rate: Decimal | None = None
