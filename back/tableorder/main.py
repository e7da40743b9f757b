import logging
from datetime import date

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session

from . import orders as order_service
from . import payments as payment_service
from . import sessions as session_service
from .clock import business_date, utcnow
from .config_store import SERVICE_CHARGE_RATE, TAX_RATE, PricingConfig, seed_default_settings
from .db import check_db_connection, create_db_and_tables, engine, get_session
from .email_service import EmailNotifier
from .errors import OrderingError, ValidationFailed
from .gateway import MidtransGateway
from .models import (
    CheckoutRequest,
    ItemBatchDone,
    MenuStockUpdate,
    OrderCreate,
    OrderItemStatus,
    OrderPreviewRequest,
    PaymentStatus,
    PricingUpdate,
    QRScanRequest,
)
from .realtime import RedisPublisher
from .settings import settings
from .stations import StationRouter, parse_station, station_queue, station_stats
from .stock import restock
from .views import order_detail, order_view

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


app = FastAPI(
    title="Table Order API",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Parse CORS origins from environment (comma-separated)
cors_origins_list = [
    origin.strip()
    for origin in settings.cors_origins.split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


ERROR_STATUS = {
    "ValidationFailed": 422,
    "SessionNotFound": 401,
    "SessionExpired": 401,
    "TableNotFound": 404,
    "OrderNotFound": 404,
    "OrderItemNotFound": 404,
    "StockInsufficient": 409,
    "AlreadyPaid": 409,
    "NotYetPaid": 409,
    "ItemsNotAllDone": 409,
    "AlreadyCompleted": 409,
    "InvalidTransition": 409,
    "PaymentGatewayUnavailable": 502,
}


@app.exception_handler(OrderingError)
def ordering_error_handler(request: Request, exc: OrderingError) -> JSONResponse:
    status_code = ERROR_STATUS.get(exc.kind, 400)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.kind} {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path}: {exc.kind} {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.on_event("startup")
def on_startup() -> None:
    logger.info("Starting application...")
    create_db_and_tables()
    with Session(engine) as session:
        seed_default_settings(session)
        app.state.router = StationRouter.from_session(session)
    app.state.pricing_config = PricingConfig(engine)
    app.state.publisher = RedisPublisher()
    app.state.notifier = EmailNotifier()
    app.state.gateway = MidtransGateway()


# ============ COLLABORATORS ============

def get_pricing_config(request: Request) -> PricingConfig:
    config = getattr(request.app.state, "pricing_config", None)
    if config is None:
        config = request.app.state.pricing_config = PricingConfig(engine)
    return config


def get_router(request: Request, session: Session = Depends(get_session)) -> StationRouter:
    router = getattr(request.app.state, "router", None)
    if router is None:
        router = request.app.state.router = StationRouter.from_session(session)
    return router


def get_publisher(request: Request) -> RedisPublisher | None:
    return getattr(request.app.state, "publisher", None)


def get_notifier(request: Request) -> EmailNotifier | None:
    return getattr(request.app.state, "notifier", None)


def get_gateway(request: Request) -> MidtransGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        gateway = request.app.state.gateway = MidtransGateway()
    return gateway


def ok(data=None, message: str | None = None) -> dict:
    payload = {"success": True}
    if message:
        payload["message"] = message
    if data is not None:
        payload["data"] = data
    return payload


# ============ HEALTH ============

@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/health/db")
def health_db() -> dict:
    """Check database connection."""
    try:
        check_db_connection()
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Database error: {e}")
    return {"status": "ok", "database": "connected"}


# ============ CUSTOMER: SESSION ============

@app.post("/qr/scan")
def scan_qr(
    request: Request,
    scan_request: QRScanRequest,
    x_device_id: str | None = Header(default=None),
    session: Session = Depends(get_session),
) -> dict:
    user_agent = request.headers.get("user-agent")
    ip_address = request.client.host if request.client else None
    device = session_service.DeviceContext(
        device_id=session_service.resolve_device_id(
            x_device_id,
            scan_request.device_id,
            user_agent,
            ip_address,
            scan_request.device_info,
        ),
        user_agent=user_agent,
        ip_address=ip_address,
    )
    result = session_service.scan(session, scan_request.qr_code, device)
    message = "Welcome back! Session extended" if result.is_returning_customer else "QR scanned"
    return ok(result.as_dict(), message)


@app.get("/session/{token}")
def get_session_info(token: str, session: Session = Depends(get_session)) -> dict:
    return ok(session_service.describe_session(session, token))


# ============ CUSTOMER: ORDERS ============

@app.post("/orders/calculate")
def calculate_order(
    preview_request: OrderPreviewRequest,
    session: Session = Depends(get_session),
    pricing_config: PricingConfig = Depends(get_pricing_config),
) -> dict:
    return ok(order_service.preview_order(session, pricing_config, preview_request.items))


@app.post("/orders")
def create_order(
    order_request: OrderCreate,
    session: Session = Depends(get_session),
    pricing_config: PricingConfig = Depends(get_pricing_config),
    notifier: EmailNotifier | None = Depends(get_notifier),
) -> dict:
    placement = order_service.place_order(
        session,
        pricing_config,
        notifier,
        order_request.session_token,
        order_request.items,
        email=order_request.email,
        notes=order_request.notes,
    )
    return ok(placement.as_dict(), "Order created")


@app.get("/orders/history/{token}")
def order_history(token: str, session: Session = Depends(get_session)) -> dict:
    return ok(session_service.customer_history(session, token))


@app.get("/orders/{order_uuid}")
def get_order(order_uuid: str, session: Session = Depends(get_session)) -> dict:
    order = order_service.get_order(session, order_uuid=order_uuid)
    return ok(order_detail(order))


# ============ PAYMENTS ============

@app.post("/payments/checkout")
def checkout(
    checkout_request: CheckoutRequest,
    session: Session = Depends(get_session),
    gateway: MidtransGateway = Depends(get_gateway),
) -> dict:
    result = payment_service.start_checkout(session, checkout_request.order_uuid, gateway)
    return ok(result.as_dict())


@app.post("/payments/notification")
def payment_notification(
    payload: dict = Body(...),
    session: Session = Depends(get_session),
    gateway: MidtransGateway = Depends(get_gateway),
    router: StationRouter = Depends(get_router),
    notifier: EmailNotifier | None = Depends(get_notifier),
    publisher: RedisPublisher | None = Depends(get_publisher),
) -> dict:
    """Gateway webhook. Duplicates and stale deliveries still answer 200 so the gateway stops retrying."""
    if not gateway.verify_signature(payload):
        logger.warning(f"Rejected notification with bad signature for order {payload.get('order_id')}")
        raise HTTPException(status_code=403, detail="Invalid signature")
    result = payment_service.reconcile_notification(
        session, payload, router=router, notifier=notifier, publisher=publisher
    )
    return ok(result.as_dict())


# ============ CASHIER ============

@app.get("/cashier/orders")
def cashier_orders(
    payment_status: PaymentStatus | None = None,
    table_id: int | None = None,
    status: str | None = Query(default=None, pattern="^(unpaid|pending|ready|completed)$"),
    date_from: date | None = None,
    date_to: date | None = None,
    exclude_completed: bool = False,
    exclude_ready: bool = False,
    session: Session = Depends(get_session),
) -> dict:
    views = order_service.list_orders(
        session,
        payment_status=payment_status,
        table_id=table_id,
        status=status,
        date_from=date_from,
        date_to=date_to,
        exclude_completed=exclude_completed,
        exclude_ready=exclude_ready,
    )
    return {"success": True, "data": views, "count": len(views)}


@app.put("/cashier/orders/{order_id}/validate-payment")
def validate_payment(
    order_id: int,
    session: Session = Depends(get_session),
    router: StationRouter = Depends(get_router),
    notifier: EmailNotifier | None = Depends(get_notifier),
    publisher: RedisPublisher | None = Depends(get_publisher),
) -> dict:
    order, follow_up = order_service.validate_cash_payment(
        session, order_id, notifier=notifier, publisher=publisher, router=router
    )
    data = order_view(order)
    data["stations_assigned"] = follow_up.stations_assigned
    data["email_sent"] = follow_up.email_sent
    return ok(data, "Payment validated successfully")


@app.put("/cashier/orders/{order_id}/cancel")
def cancel_order(order_id: int, session: Session = Depends(get_session)) -> dict:
    order = order_service.cancel_cash_order(session, order_id)
    return ok(order_view(order), "Order cancelled")


@app.put("/cashier/orders/{order_id}/complete")
def complete_order(
    order_id: int,
    session: Session = Depends(get_session),
    publisher: RedisPublisher | None = Depends(get_publisher),
) -> dict:
    order = order_service.complete_order(session, order_id, publisher=publisher)
    return ok(order_view(order), "Order marked as completed")


# ============ STATIONS ============

@app.get("/stations/{station}/orders")
def get_station_orders(
    station: str,
    status: str = "pending",
    day: date | None = Query(default=None, alias="date"),
    session: Session = Depends(get_session),
    router: StationRouter = Depends(get_router),
) -> dict:
    status = status.lower()
    if status not in ("pending", "done", "all"):
        raise ValidationFailed("status must be pending, done or all", status=status)
    item_status = None if status == "all" else OrderItemStatus(status.capitalize())
    return ok(station_queue(session, router, parse_station(station), item_status, day))


@app.get("/stations/{station}/stats")
def get_station_stats(
    station: str,
    day: date | None = Query(default=None, alias="date"),
    session: Session = Depends(get_session),
    router: StationRouter = Depends(get_router),
) -> dict:
    return ok(station_stats(session, router, parse_station(station), day or business_date(utcnow())))


@app.put("/stations/items/{item_id}/start")
def start_item(item_id: int, session: Session = Depends(get_session)) -> dict:
    ticket = order_service.start_item(session, item_id)
    return ok({
        "item_id": item_id,
        "station": ticket.station.value,
        "status": ticket.status.value,
        "started_at": ticket.started_at.isoformat() if ticket.started_at else None,
    }, "Item started")


@app.put("/stations/items/{item_id}/done")
def complete_item(
    item_id: int,
    session: Session = Depends(get_session),
    publisher: RedisPublisher | None = Depends(get_publisher),
) -> dict:
    completion = order_service.complete_item(session, item_id, publisher=publisher)
    return ok({
        "item_id": completion.item.id,
        "status": completion.item.status.value,
        "order_number": completion.order.order_number,
        "order_completed": completion.order_completed,
    }, "Item marked as done")


@app.post("/stations/items/batch-done")
def complete_items(
    batch: ItemBatchDone,
    session: Session = Depends(get_session),
    publisher: RedisPublisher | None = Depends(get_publisher),
) -> dict:
    result = order_service.complete_items(session, batch.item_ids, publisher=publisher)
    return ok(result, f"Successfully updated {result['updated_count']} items")


@app.patch("/stations/{station}/menus/{menu_id}/stock")
def update_menu_stock(
    station: str,
    menu_id: int,
    stock_update: MenuStockUpdate,
    session: Session = Depends(get_session),
    router: StationRouter = Depends(get_router),
) -> dict:
    menu, updated = restock(
        session,
        menu_id,
        station=parse_station(station),
        router=router,
        stock_quantity=stock_update.stock_quantity,
        minimum_stock=stock_update.minimum_stock,
        is_available=stock_update.is_available,
    )
    return ok({
        "id": menu.id,
        "name": menu.name,
        "updated_fields": updated,
        "current_data": {
            "stock_quantity": menu.stock_quantity,
            "minimum_stock": menu.minimum_stock,
            "is_available": menu.is_available,
        },
    }, "Menu stock updated successfully")


# ============ SETTINGS ============

@app.get("/settings/pricing")
def get_pricing(pricing_config: PricingConfig = Depends(get_pricing_config)) -> dict:
    service_charge_rate, tax_rate = pricing_config.rates()
    return ok({"service_charge_rate": float(service_charge_rate), "tax_rate": float(tax_rate)})


@app.put("/settings/pricing")
def update_pricing(
    pricing_update: PricingUpdate,
    pricing_config: PricingConfig = Depends(get_pricing_config),
) -> dict:
    if pricing_update.service_charge_rate is not None:
        pricing_config.set_rate(SERVICE_CHARGE_RATE, pricing_update.service_charge_rate)
    if pricing_update.tax_rate is not None:
        pricing_config.set_rate(TAX_RATE, pricing_update.tax_rate)
    service_charge_rate, tax_rate = pricing_config.rates()
    return ok(
        {"service_charge_rate": float(service_charge_rate), "tax_rate": float(tax_rate)},
        "Pricing updated",
    )
