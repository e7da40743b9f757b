import asyncio

import aiosmtplib
import pytest

from tableorder import email_service
from tableorder.email_service import ORDER_CONFIRMATION, PAYMENT_RECEIPT, EmailNotifier, send_email
from tableorder.settings import settings


@pytest.fixture
def smtp(monkeypatch):
    """Configured SMTP credentials with aiosmtplib.send captured instead of sent."""
    sent = []

    async def fake_send(message, **kwargs):
        sent.append((message, kwargs))
        return {}, "OK"

    monkeypatch.setattr(settings, "smtp_user", "mailer@example.com")
    monkeypatch.setattr(settings, "smtp_password", "app-password")
    monkeypatch.setattr(settings, "smtp_port", 587)
    monkeypatch.setattr(email_service.aiosmtplib, "send", fake_send)
    return sent


def test_send_email_without_credentials(monkeypatch):
    monkeypatch.setattr(settings, "smtp_user", "")
    assert asyncio.run(send_email("guest@example.com", "Hi", "<p>Hi</p>")) is False


def test_send_email_uses_starttls_on_587(smtp):
    assert asyncio.run(send_email("guest@example.com", "Hi", "<p>Hi</p>", "Hi")) is True
    message, kwargs = smtp[0]
    assert message["To"] == "guest@example.com"
    assert kwargs["start_tls"] is True
    assert kwargs["username"] == "mailer@example.com"


def test_send_email_uses_implicit_tls_on_465(smtp, monkeypatch):
    monkeypatch.setattr(settings, "smtp_port", 465)
    asyncio.run(send_email("guest@example.com", "Hi", "<p>Hi</p>"))
    assert smtp[0][1]["use_tls"] is True
    assert "start_tls" not in smtp[0][1]


def test_send_email_reports_smtp_failure(monkeypatch, smtp):
    async def broken_send(message, **kwargs):
        raise aiosmtplib.SMTPException("authentication failed")

    monkeypatch.setattr(email_service.aiosmtplib, "send", broken_send)
    assert asyncio.run(send_email("guest@example.com", "Hi", "<p>Hi</p>")) is False


def test_order_confirmation(smtp, pending_order):
    assert EmailNotifier().send(ORDER_CONFIRMATION, pending_order) is True
    message, _ = smtp[0]
    assert message["Subject"] == "Order ORD-20251103-001 received"
    body = message.as_string()
    assert "Rp 32.956" in body
    assert "Pizza" in body


def test_unexpected_send_failure_is_reported(monkeypatch, smtp, pending_order):
    async def broken_send(message, **kwargs):
        raise ValueError("bad header")

    monkeypatch.setattr(email_service.aiosmtplib, "send", broken_send)
    assert EmailNotifier().send(ORDER_CONFIRMATION, pending_order) is False


def test_receipt_requires_payment(smtp, pending_order):
    assert EmailNotifier().send(PAYMENT_RECEIPT, pending_order) is False
    assert smtp == []


def test_payment_receipt(smtp, paid_order):
    assert EmailNotifier().send(PAYMENT_RECEIPT, paid_order) is True
    assert smtp[0][0]["Subject"] == "Receipt for order ORD-20251103-001"


def test_no_email_on_file(smtp, session, pending_order):
    pending_order.customer.email = None
    session.add(pending_order.customer)
    session.commit()
    assert EmailNotifier().send(ORDER_CONFIRMATION, pending_order) is False


def test_unknown_event(smtp, pending_order):
    assert EmailNotifier().send("birthday_card", pending_order) is False
