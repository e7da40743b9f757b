"""
Email service for customer notifications.
Sends order confirmations and payment receipts over SMTP (Gmail, Proton Mail, etc.).
"""

import asyncio
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import aiosmtplib

from .settings import settings

logger = logging.getLogger(__name__)

ORDER_CONFIRMATION = "order_confirmation"
PAYMENT_RECEIPT = "payment_receipt"


def _rupiah(amount) -> str:
    return "Rp " + f"{float(amount):,.0f}".replace(",", ".")


async def send_email(
    to_email: str,
    subject: str,
    html_content: str,
    text_content: Optional[str] = None,
    from_email: Optional[str] = None,
    from_name: Optional[str] = None,
) -> bool:
    """
    Send an email via SMTP.

    Args:
        to_email: Recipient email address
        subject: Email subject
        html_content: HTML email body
        text_content: Plain text email body (optional)
        from_email: Sender email (defaults to settings.email_from)
        from_name: Sender name (defaults to settings.email_from_name)

    Returns:
        True if email sent successfully, False otherwise
    """
    if not settings.smtp_user or not settings.smtp_password:
        logger.error("SMTP credentials not configured")
        return False

    from_email = from_email or settings.email_from
    from_name = from_name or settings.email_from_name

    message = MIMEMultipart("alternative")
    message["Subject"] = subject
    message["From"] = f"{from_name} <{from_email}>" if from_name else from_email
    message["To"] = to_email

    if text_content:
        message.attach(MIMEText(text_content, "plain"))
    message.attach(MIMEText(html_content, "html"))

    # Port 587 is STARTTLS, port 465 is implicit TLS
    tls_options = {"start_tls": settings.smtp_use_tls}
    if settings.smtp_port == 587:
        tls_options = {"start_tls": True}
    elif settings.smtp_port == 465:
        tls_options = {"use_tls": True}

    try:
        await aiosmtplib.send(
            message,
            hostname=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            **tls_options,
        )
        logger.info(f"Email sent successfully to {to_email}")
        return True
    except (aiosmtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        return False


def _item_rows(order) -> tuple[str, str]:
    html_rows = []
    text_rows = []
    for item in order.items:
        name = item.menu.name if item.menu else f"Menu #{item.menu_id}"
        html_rows.append(
            f"<tr><td>{name}</td><td style=\"text-align:center\">{item.quantity}</td>"
            f"<td style=\"text-align:right\">{_rupiah(item.subtotal)}</td></tr>"
        )
        text_rows.append(f"  {item.quantity} x {name}  {_rupiah(item.subtotal)}")
    return "\n".join(html_rows), "\n".join(text_rows)


def _render(order, heading: str, intro: str) -> tuple[str, str]:
    html_rows, text_rows = _item_rows(order)
    table_number = order.table.table_number if order.table else order.table_id
    html_content = f"""
    <!DOCTYPE html>
    <html>
    <head>
        <meta charset="utf-8">
        <style>
            body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
            .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
            table {{ width: 100%; border-collapse: collapse; }}
            td {{ padding: 4px 0; }}
            .total {{ font-weight: bold; border-top: 1px solid #ccc; }}
        </style>
    </head>
    <body>
        <div class="container">
            <h1>{heading}</h1>
            <p>{intro}</p>
            <p>Order <strong>{order.order_number}</strong> at table {table_number}</p>
            <table>
                {html_rows}
                <tr><td colspan="2">Subtotal</td><td style="text-align:right">{_rupiah(order.subtotal)}</td></tr>
                <tr><td colspan="2">Service charge</td><td style="text-align:right">{_rupiah(order.service_charge_amount)}</td></tr>
                <tr><td colspan="2">Tax</td><td style="text-align:right">{_rupiah(order.tax_amount)}</td></tr>
                <tr class="total"><td colspan="2">Total</td><td style="text-align:right">{_rupiah(order.total_amount)}</td></tr>
            </table>
            <hr>
            <p style="color: #666; font-size: 12px;">This is an automated message, please do not reply.</p>
        </div>
    </body>
    </html>
    """
    text_content = f"""
    {heading}

    {intro}
    Order {order.order_number} at table {table_number}

{text_rows}

    Subtotal:       {_rupiah(order.subtotal)}
    Service charge: {_rupiah(order.service_charge_amount)}
    Tax:            {_rupiah(order.tax_amount)}
    Total:          {_rupiah(order.total_amount)}
    """
    return html_content, text_content


async def send_order_confirmation(to_email: str, order) -> bool:
    html_content, text_content = _render(
        order,
        "Order received",
        "Thank you for your order. Please complete the payment so we can start preparing it.",
    )
    return await send_email(to_email, f"Order {order.order_number} received", html_content, text_content)


async def send_payment_receipt(to_email: str, order) -> bool:
    html_content, text_content = _render(
        order,
        "Payment received",
        f"We received your payment ({order.payment_reference}). Your order is being prepared.",
    )
    return await send_email(to_email, f"Receipt for order {order.order_number}", html_content, text_content)


class EmailNotifier:
    """
    Notification sender used by the ordering core: `send(event_type, order) -> bool`.

    Called from synchronous request handlers (FastAPI runs those in a worker thread
    without an event loop), so each send drives its own loop with asyncio.run.
    Never raises; a False return is reported to clients as `email_sent: false`.
    """

    def send(self, event_type: str, order) -> bool:
        customer = order.customer
        if customer is None or not customer.email:
            return False

        if event_type == ORDER_CONFIRMATION:
            sender = send_order_confirmation
        elif event_type == PAYMENT_RECEIPT:
            if order.payment_status != "Paid":
                return False
            sender = send_payment_receipt
        else:
            logger.warning(f"Unknown notification event {event_type!r} for order {order.order_number}")
            return False

        try:
            return asyncio.run(sender(customer.email, order))
        except Exception as e:
            logger.warning(f"Could not send {event_type} for order {order.order_number}: {e}", exc_info=True)
            return False
