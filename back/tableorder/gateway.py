"""
Midtrans Snap client.

Only two things are needed from the gateway: a checkout token for an order and
a way to tell genuine notifications from forged ones.
"""

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass

import httpx

from .settings import settings

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """The gateway could not be reached or rejected the request."""
    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


@dataclass
class Checkout:
    token: str
    redirect_url: str


def _whole_rupiah(amount) -> int:
    return int(round(float(amount)))


def build_snap_payload(order, frontend_url: str) -> dict:
    """Snap transaction body: items plus service charge and tax lines, gross amount in whole rupiah."""
    item_details = []
    for item in order.items:
        menu = item.menu
        category = menu.category if menu else None
        item_details.append({
            "id": f"ITEM-{item.menu_id}",
            "price": _whole_rupiah(item.price),
            "quantity": item.quantity,
            "name": (menu.name if menu else f"Menu {item.menu_id}")[:50],
            "category": category.name if category else "Food & Beverage",
        })
    if order.service_charge_amount > 0:
        item_details.append({
            "id": "SERVICE-CHARGE",
            "price": _whole_rupiah(order.service_charge_amount),
            "quantity": 1,
            "name": f"Service Charge ({round(float(order.service_charge_rate) * 100)}%)",
        })
    if order.tax_amount > 0:
        item_details.append({
            "id": "TAX",
            "price": _whole_rupiah(order.tax_amount),
            "quantity": 1,
            "name": f"Restaurant Tax ({round(float(order.tax_rate) * 100)}%)",
        })

    gross_amount = _whole_rupiah(order.total_amount)
    calculated = sum(d["price"] * d["quantity"] for d in item_details)
    if calculated != gross_amount:
        logger.warning(f"Snap amount mismatch for {order.order_number}: items {calculated}, total {gross_amount}")

    customer = order.customer
    table = order.table
    callback_query = f"?order_id={order.order_uuid}"
    return {
        "transaction_details": {"order_id": order.order_uuid, "gross_amount": gross_amount},
        "customer_details": {
            "first_name": "Customer",
            "email": customer.email if customer else None,
        },
        "item_details": item_details,
        "callbacks": {
            "finish": f"{frontend_url}/payment-success{callback_query}",
            "unfinish": f"{frontend_url}/payment-pending{callback_query}",
            "error": f"{frontend_url}/payment-error{callback_query}",
        },
        "custom_field1": str(table.table_number) if table else None,
        "custom_field2": order.order_number,
    }


class MidtransGateway:
    def __init__(
        self,
        server_key: str | None = None,
        snap_url: str | None = None,
        frontend_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.server_key = server_key if server_key is not None else settings.midtrans_server_key
        self.snap_url = snap_url or settings.midtrans_snap_url
        self.frontend_url = (frontend_url or settings.frontend_url).rstrip("/")
        self.timeout = timeout or settings.midtrans_timeout_seconds
        self._transport = transport

    def _auth_header(self) -> str:
        encoded = base64.b64encode(f"{self.server_key}:".encode()).decode()
        return f"Basic {encoded}"

    def create_checkout(self, order) -> Checkout:
        if not self.server_key:
            raise GatewayError("Midtrans server key is not configured")

        payload = build_snap_payload(order, self.frontend_url)
        logger.info(f"Creating Snap token for order {order.order_uuid}")
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(
                    self.snap_url,
                    json=payload,
                    headers={
                        "Accept": "application/json",
                        "Authorization": self._auth_header(),
                    },
                )
        except httpx.HTTPError as e:
            raise GatewayError(f"Midtrans request failed: {e}")

        if response.status_code >= 400:
            raise GatewayError(
                f"Midtrans rejected the transaction: {response.text[:200]}",
                status_code=response.status_code,
            )
        data = response.json()
        if "token" not in data:
            raise GatewayError("Midtrans response has no token", status_code=response.status_code)
        return Checkout(token=data["token"], redirect_url=data.get("redirect_url", ""))

    def signature_for(self, order_id: str, status_code: str, gross_amount: str) -> str:
        raw = f"{order_id}{status_code}{gross_amount}{self.server_key}"
        return hashlib.sha512(raw.encode()).hexdigest()

    def verify_signature(self, payload: dict) -> bool:
        """Unsigned payloads pass only when no server key is configured (local development)."""
        signature = payload.get("signature_key")
        if not signature:
            return not self.server_key
        expected = self.signature_for(
            str(payload.get("order_id", "")),
            str(payload.get("status_code", "")),
            str(payload.get("gross_amount", "")),
        )
        return hmac.compare_digest(signature, expected)
