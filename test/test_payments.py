"""Tests for gateway notification reconciliation and checkout."""

from datetime import timedelta, timezone

import pytest
from sqlmodel import select

from tableorder.errors import (
    AlreadyPaid,
    InvalidTransition,
    OrderNotFound,
    PaymentGatewayUnavailable,
    ValidationFailed,
)
from tableorder.models import (
    PaymentLog,
    PaymentLogStatus,
    PaymentReconciliation,
    PaymentStatus,
    StationTicket,
    Table,
    TableStatus,
)
from tableorder.orders import cancel_cash_order
from tableorder.payments import map_transaction_status, reconcile_notification, start_checkout

from conftest import NOW, FakeGateway


def _payload(order, transaction_status, **extra):
    payload = {
        "order_id": order.order_uuid,
        "transaction_status": transaction_status,
        "transaction_id": "tx-1",
        "gross_amount": "32956.00",
        "status_code": "200",
    }
    payload.update(extra)
    return payload


def _logs(session, order):
    return session.exec(select(PaymentLog).where(PaymentLog.order_id == order.id)).all()


@pytest.mark.parametrize("transaction_status,fraud_status,expected", [
    ("capture", "accept", PaymentStatus.paid),
    ("capture", None, PaymentStatus.paid),
    ("capture", "challenge", PaymentStatus.pending),
    ("settlement", None, PaymentStatus.paid),
    ("SETTLEMENT", None, PaymentStatus.paid),
    ("pending", None, PaymentStatus.pending),
    ("deny", None, PaymentStatus.failed),
    ("expire", None, PaymentStatus.failed),
    ("cancel", None, PaymentStatus.failed),
    ("authorize", None, None),
    ("", None, None),
])
def test_map_transaction_status(transaction_status, fraud_status, expected):
    assert map_transaction_status(transaction_status, fraud_status) == expected


def test_settlement_marks_paid(session, pending_order, router, notifier, publisher):
    result = reconcile_notification(
        session, _payload(pending_order, "settlement"),
        router=router, notifier=notifier, publisher=publisher, now=NOW,
    )

    assert result.applied is True
    assert result.status == PaymentStatus.paid
    assert result.follow_up.stations_assigned is True
    order = result.order
    assert order.payment_reference == "tx-1"
    assert order.paid_at.replace(tzinfo=timezone.utc) == NOW
    assert len(session.exec(select(StationTicket)).all()) == 2
    assert "order_paid" in publisher.types()

    data = result.as_dict()
    assert data["payment_status"] == "Paid"
    assert data["duplicate"] is False


def test_duplicate_settlement_is_ignored(session, pending_order, router, notifier, publisher):
    reconcile_notification(session, _payload(pending_order, "settlement"), router=router, now=NOW)
    publisher.events.clear()

    result = reconcile_notification(
        session, _payload(pending_order, "settlement"),
        router=router, notifier=notifier, publisher=publisher, now=NOW + timedelta(minutes=1),
    )

    assert result.applied is False
    assert result.duplicate is True
    assert result.order.paid_at.replace(tzinfo=timezone.utc) == NOW
    assert publisher.events == []
    assert [log.status for log in _logs(session, pending_order)] == [PaymentLogStatus.success]
    record = session.exec(select(PaymentReconciliation)).one()
    assert record.notification_count == 2
    assert record.outcome == PaymentStatus.paid


def test_checkout_log_is_reused_by_settlement(session, pending_order, router, gateway):
    start_checkout(session, pending_order.order_uuid, gateway)
    assert [log.status for log in _logs(session, pending_order)] == [PaymentLogStatus.pending]

    reconcile_notification(session, _payload(pending_order, "settlement"), router=router, now=NOW)

    logs = _logs(session, pending_order)
    assert [(log.transaction_id, log.status) for log in logs] == [("tx-1", PaymentLogStatus.success)]


def test_pending_after_settlement_does_not_revert(session, pending_order, router):
    reconcile_notification(session, _payload(pending_order, "settlement"), router=router, now=NOW)
    result = reconcile_notification(session, _payload(pending_order, "pending"), router=router, now=NOW)

    assert result.applied is False
    assert result.status == PaymentStatus.paid


def test_pending_notification_keeps_order_pending(session, pending_order):
    result = reconcile_notification(session, _payload(pending_order, "pending"), now=NOW)
    assert result.applied is False
    assert result.duplicate is False
    assert result.status == PaymentStatus.pending
    assert [log.status for log in _logs(session, pending_order)] == [PaymentLogStatus.pending]


def test_deny_fails_order_and_frees_table(session, pending_order, catalog, publisher):
    result = reconcile_notification(
        session, _payload(pending_order, "deny"), publisher=publisher, now=NOW + timedelta(minutes=5)
    )

    assert result.applied is True
    assert result.status == PaymentStatus.failed
    assert session.get(Table, catalog["table1"].id).status == TableStatus.free
    assert publisher.types() == ["order_failed"]
    assert [log.status for log in _logs(session, pending_order)] == [PaymentLogStatus.failed]


def test_settlement_after_failure_needs_review(session, pending_order, router):
    cancel_cash_order(session, pending_order.id, now=NOW)

    result = reconcile_notification(session, _payload(pending_order, "settlement"), router=router, now=NOW)

    assert result.applied is False
    assert result.requires_review is True
    assert result.status == PaymentStatus.failed
    assert session.exec(select(StationTicket)).all() == []


def test_unrecognized_status_is_acknowledged(session, pending_order):
    result = reconcile_notification(session, _payload(pending_order, "authorize"), now=NOW)
    assert result.applied is False
    assert result.status == PaymentStatus.pending
    assert session.exec(select(PaymentReconciliation)).one().last_transaction_status == "authorize"


def test_capture_under_fraud_review_stays_pending(session, pending_order):
    result = reconcile_notification(
        session, _payload(pending_order, "capture", fraud_status="challenge"), now=NOW
    )
    assert result.status == PaymentStatus.pending


@pytest.mark.parametrize("payload", [{}, {"order_id": "abc"}, {"transaction_status": "settlement"}])
def test_missing_fields(session, catalog, payload):
    with pytest.raises(ValidationFailed):
        reconcile_notification(session, payload, now=NOW)


def test_unknown_order(session, catalog):
    with pytest.raises(OrderNotFound):
        reconcile_notification(session, {"order_id": "missing", "transaction_status": "settlement"}, now=NOW)


def test_station_failure_does_not_undo_payment(session, pending_order, notifier):
    class BrokenRouter:
        def station_for_category(self, category_id):
            raise RuntimeError("routing table unavailable")

    result = reconcile_notification(
        session, _payload(pending_order, "settlement"), router=BrokenRouter(), notifier=notifier, now=NOW
    )
    assert result.status == PaymentStatus.paid
    assert result.follow_up.stations_assigned is False
    session.refresh(pending_order)
    assert pending_order.payment_status == PaymentStatus.paid


# ============ CHECKOUT ============

def test_start_checkout(session, pending_order, gateway):
    result = start_checkout(session, pending_order.order_uuid, gateway)
    assert result.token == "snap-ORD-20251103-001"
    assert result.as_dict()["snap_token"] == "snap-ORD-20251103-001"
    assert gateway.checkouts == [pending_order.order_uuid]

    # A second attempt reuses the pending log row
    start_checkout(session, pending_order.order_uuid, gateway)
    assert len(_logs(session, pending_order)) == 1


def test_checkout_gateway_down(session, pending_order):
    with pytest.raises(PaymentGatewayUnavailable):
        start_checkout(session, pending_order.order_uuid, FakeGateway(fail=True))
    assert _logs(session, pending_order) == []


def test_checkout_paid_order(session, paid_order, gateway):
    with pytest.raises(AlreadyPaid):
        start_checkout(session, paid_order.order_uuid, gateway)


def test_checkout_failed_order(session, pending_order, gateway):
    cancel_cash_order(session, pending_order.id, now=NOW)
    with pytest.raises(InvalidTransition):
        start_checkout(session, pending_order.order_uuid, gateway)


def test_checkout_unknown_order(session, catalog, gateway):
    with pytest.raises(OrderNotFound):
        start_checkout(session, "missing", gateway)
