"""
Payment Reconciliation

Gateway notifications are applied through a single entry point that
- locks the order row, so concurrent deliveries for one order serialize
- keeps one PaymentReconciliation row per order (machine state)
- only applies forward transitions (Pending -> Paid, Pending -> Failed)

Duplicates and stale notifications are acknowledged without changing anything,
because the gateway keeps retrying anything that is not a 2xx.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlmodel import Session, select

from .clock import utcnow
from .errors import AlreadyPaid, InvalidTransition, OrderNotFound, PaymentGatewayUnavailable, ValidationFailed
from .gateway import GatewayError
from .models import Order, PaymentLogStatus, PaymentReconciliation, PaymentStatus
from .orders import (
    PaymentFollowUp,
    after_payment,
    get_order,
    mark_failed,
    mark_paid,
    record_payment_log,
    release_table_if_idle,
)
from .realtime import publish_event

logger = logging.getLogger(__name__)

_FAILED_STATUSES = {"deny", "expire", "cancel"}


def map_transaction_status(transaction_status: str, fraud_status: str | None = None) -> PaymentStatus | None:
    """Gateway status -> payment outcome. None means unrecognized."""
    status = (transaction_status or "").lower()
    if status == "capture":
        # Missing fraud status counts as accepted
        if (fraud_status or "accept").lower() == "accept":
            return PaymentStatus.paid
        return PaymentStatus.pending
    if status == "settlement":
        return PaymentStatus.paid
    if status == "pending":
        return PaymentStatus.pending
    if status in _FAILED_STATUSES:
        return PaymentStatus.failed
    return None


def _log_status(status: PaymentStatus) -> PaymentLogStatus:
    if status == PaymentStatus.paid:
        return PaymentLogStatus.success
    if status == PaymentStatus.failed:
        return PaymentLogStatus.failed
    return PaymentLogStatus.pending


@dataclass
class ReconciliationResult:
    order: Order
    status: PaymentStatus
    applied: bool
    duplicate: bool = False
    requires_review: bool = False
    follow_up: PaymentFollowUp | None = None

    def as_dict(self) -> dict:
        data = {
            "order_uuid": self.order.order_uuid,
            "order_number": self.order.order_number,
            "payment_status": self.status.value,
            "applied": self.applied,
            "duplicate": self.duplicate,
            "requires_review": self.requires_review,
        }
        if self.follow_up is not None:
            data["stations_assigned"] = self.follow_up.stations_assigned
            data["email_sent"] = self.follow_up.email_sent
        return data


def reconcile_notification(
    session: Session,
    payload: dict,
    router=None,
    notifier=None,
    publisher=None,
    now: datetime | None = None,
) -> ReconciliationResult:
    now = now or utcnow()
    order_uuid = payload.get("order_id")
    transaction_status = payload.get("transaction_status")
    if not order_uuid or not transaction_status:
        raise ValidationFailed("Missing required fields: order_id or transaction_status")
    fraud_status = payload.get("fraud_status")
    transaction_id = payload.get("transaction_id")

    order = session.exec(select(Order).where(Order.order_uuid == order_uuid).with_for_update()).first()
    if not order:
        raise OrderNotFound("Order not found", order_uuid=order_uuid)

    record = session.exec(
        select(PaymentReconciliation).where(PaymentReconciliation.order_id == order.id)
    ).first()
    if record is None:
        record = PaymentReconciliation(order_id=order.id)
    record.notification_count += 1
    record.last_transaction_status = transaction_status
    record.last_fraud_status = fraud_status
    record.transaction_id = transaction_id or record.transaction_id
    record.updated_at = now

    target = map_transaction_status(transaction_status, fraud_status)
    current = order.payment_status
    applied = False
    duplicate = False

    if target is None:
        logger.warning(f"Unrecognized transaction status {transaction_status!r} for order {order.order_number}")
    elif target == current:
        duplicate = target != PaymentStatus.pending
        if duplicate:
            logger.info(f"Duplicate {transaction_status} notification for order {order.order_number} ignored")
        else:
            record_payment_log(session, order, transaction_id, PaymentLogStatus.pending, payload)
    elif current == PaymentStatus.pending and target == PaymentStatus.paid:
        mark_paid(session, order, transaction_id or order.order_uuid, now)
        applied = True
    elif current == PaymentStatus.pending and target == PaymentStatus.failed:
        mark_failed(session, order)
        release_table_if_idle(session, order.table_id, now)
        applied = True
    elif current == PaymentStatus.failed and target == PaymentStatus.paid:
        # Money captured for an order that already failed: a human has to sort it out
        record.requires_review = True
        logger.warning(f"Paid notification for failed order {order.order_number}; flagged for review")
    else:
        logger.warning(
            f"Stale {transaction_status} notification for order {order.order_number} "
            f"(currently {current.value}) discarded"
        )

    if applied:
        record_payment_log(session, order, transaction_id, _log_status(target), payload)
        logger.info(f"Order {order.order_number} payment {current.value} -> {target.value}")
    record.outcome = order.payment_status
    session.add(record)
    session.commit()
    session.refresh(order)
    session.refresh(record)

    follow_up = None
    if applied and order.payment_status == PaymentStatus.paid:
        follow_up = after_payment(session, order, router, notifier, publisher)
    elif applied:
        publish_event(
            publisher,
            {"type": "order_failed", "order_id": order.id, "order_number": order.order_number},
            table_id=order.table_id,
        )

    return ReconciliationResult(
        order=order,
        status=order.payment_status,
        applied=applied,
        duplicate=duplicate,
        requires_review=record.requires_review,
        follow_up=follow_up,
    )


@dataclass
class CheckoutResult:
    order_uuid: str
    token: str
    redirect_url: str

    def as_dict(self) -> dict:
        return {"order_uuid": self.order_uuid, "snap_token": self.token, "redirect_url": self.redirect_url}


def start_checkout(session: Session, order_uuid: str, gateway) -> CheckoutResult:
    order = get_order(session, order_uuid=order_uuid)
    if order.payment_status == PaymentStatus.paid:
        raise AlreadyPaid("Order already paid", order_number=order.order_number)
    if order.payment_status == PaymentStatus.failed:
        raise InvalidTransition("Order has failed and cannot be paid", order_number=order.order_number)

    try:
        checkout = gateway.create_checkout(order)
    except GatewayError as e:
        logger.error(f"Checkout for order {order.order_number} failed: {e}")
        raise PaymentGatewayUnavailable("Payment gateway is unavailable, please try again", order_uuid=order_uuid)

    record_payment_log(session, order, order.order_uuid, PaymentLogStatus.pending, {"snap_token": checkout.token})
    session.commit()
    logger.info(f"Checkout started for order {order.order_number}")
    return CheckoutResult(order_uuid=order.order_uuid, token=checkout.token, redirect_url=checkout.redirect_url)
