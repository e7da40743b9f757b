"""JSON views of orders shared by the customer, cashier and station routes."""

from .clock import as_utc
from .models import Order, OrderItemStatus, PaymentStatus
from .pricing import breakdown_from_order


def _iso(value):
    value = as_utc(value)
    return value.isoformat() if value else None


def derive_status(order: Order) -> str:
    """Cashier-facing status: completed, unpaid, ready (all items done) or pending."""
    if order.completed_at:
        return "completed"
    if order.payment_status != PaymentStatus.paid:
        return "unpaid"
    items = order.items
    if items and all(item.status == OrderItemStatus.done for item in items):
        return "ready"
    return "pending"


def payment_method(order: Order) -> str:
    if order.payment_reference:
        if order.payment_reference.startswith("CASH-"):
            return "Cash"
        return "Online Payment"
    if order.payment_status == PaymentStatus.pending:
        return "Pending"
    return "Unknown"


def item_view(item) -> dict:
    menu = item.menu
    category = menu.category if menu else None
    return {
        "id": item.id,
        "menu_id": item.menu_id,
        "menu_name": menu.name if menu else "Unknown",
        "category": category.name if category else "Unknown",
        "quantity": item.quantity,
        "price": float(item.price),
        "subtotal": float(item.subtotal),
        "status": item.status.value,
        "special_notes": item.special_notes,
        "completed_at": _iso(item.completed_at),
    }


def order_detail(order: Order) -> dict:
    """Customer view of one order with its frozen pricing."""
    table = order.table
    return {
        "id": order.id,
        "order_uuid": order.order_uuid,
        "order_number": order.order_number,
        "table": {"id": order.table_id, "table_number": table.table_number if table else None},
        "items": [item_view(item) for item in order.items],
        "pricing": breakdown_from_order(order).as_dict(),
        "payment_status": order.payment_status.value,
        "payment_reference": order.payment_reference,
        "notes": order.notes,
        "paid_at": _iso(order.paid_at),
        "completed_at": _iso(order.completed_at),
        "session_expires_at": _iso(order.session_expires_at),
        "created_at": _iso(order.created_at),
    }


def order_view(order: Order) -> dict:
    """Cashier view: derived status, payment method and preparation progress."""
    items = order.items
    done = sum(1 for item in items if item.status == OrderItemStatus.done)
    customer = order.customer
    table = order.table
    return {
        "id": order.id,
        "order_uuid": order.order_uuid,
        "order_number": order.order_number,
        "table_id": order.table_id,
        "table_number": table.table_number if table else None,
        "customer_email": customer.email if customer else None,
        "order_time": _iso(order.created_at),
        "status": derive_status(order),
        "payment_status": order.payment_status.value,
        "payment_method": payment_method(order),
        "payment_reference": order.payment_reference,
        "paid_at": _iso(order.paid_at),
        "subtotal": float(order.subtotal),
        "service_charge_rate": float(order.service_charge_rate),
        "service_charge_amount": float(order.service_charge_amount),
        "tax_rate": float(order.tax_rate),
        "tax_amount": float(order.tax_amount),
        "total_amount": float(order.total_amount),
        "notes": order.notes,
        "completed_at": _iso(order.completed_at),
        "progress": {
            "total_items": len(items),
            "done_items": done,
            "percentage": round(done / len(items) * 100, 2) if items else 0,
        },
        "items": [item_view(item) for item in items],
    }
