"""Pytest configuration and fixtures."""

import os

# The app engine is built at import time; keep it off Postgres in tests
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from tableorder.config_store import PricingConfig, seed_default_settings
from tableorder.db import get_session
from tableorder.gateway import Checkout, GatewayError
from tableorder.main import app
from tableorder.models import Category, Menu, OrderItemCreate, Table
from tableorder.orders import place_order, validate_cash_payment
from tableorder.sessions import DeviceContext, issue_qr_code, scan
from tableorder.stations import StationRouter

# 10:00 in Jakarta
NOW = datetime(2025, 11, 3, 3, 0, tzinfo=timezone.utc)


class FakeNotifier:
    def __init__(self, result: bool = True):
        self.result = result
        self.sent: list[tuple[str, str]] = []

    def send(self, event_type, order) -> bool:
        self.sent.append((event_type, order.order_number))
        return self.result


class FakePublisher:
    def __init__(self):
        self.events: list[dict] = []

    def publish(self, event, *, station=None, table_id=None) -> bool:
        self.events.append({"event": event, "station": station, "table_id": table_id})
        return True

    def types(self) -> list[str]:
        return [e["event"]["type"] for e in self.events]


class FakeGateway:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.checkouts: list[str] = []

    def create_checkout(self, order) -> Checkout:
        if self.fail:
            raise GatewayError("connection refused")
        self.checkouts.append(order.order_uuid)
        return Checkout(token=f"snap-{order.order_number}", redirect_url=f"https://pay.test/{order.order_uuid}")

    def verify_signature(self, payload) -> bool:
        return payload.get("signature_key") != "forged"


@pytest.fixture(scope="function")
def engine():
    """In-memory database shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def session(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@pytest.fixture
def pricing_config(engine, session) -> PricingConfig:
    seed_default_settings(session)
    config = PricingConfig(engine)
    config.rates()
    return config


@pytest.fixture
def catalog(session) -> dict:
    """Kitchen/Bar/Pastry categories, one menu each and two tables with QR codes."""
    kitchen = Category(name="Kitchen", display_order=0)
    bar = Category(name="bar", display_order=1)
    pastry = Category(name="Pastry", display_order=2)
    drinks_misc = Category(name="Merchandise", display_order=3)
    session.add_all([kitchen, bar, pastry, drinks_misc])
    session.commit()

    pizza = Menu(category_id=kitchen.id, name="Pizza", price=Decimal("20000"), stock_quantity=10, minimum_stock=2)
    juice = Menu(category_id=bar.id, name="Orange Juice", price=Decimal("8000"), stock_quantity=10, minimum_stock=2)
    cake = Menu(category_id=pastry.id, name="Chocolate Cake", price=Decimal("25000"), stock_quantity=1, minimum_stock=2)
    mug = Menu(category_id=drinks_misc.id, name="Mug", price=Decimal("50000"), stock_quantity=5)
    session.add_all([pizza, juice, cake, mug])

    table1 = Table(table_number=1)
    table2 = Table(table_number=2)
    session.add_all([table1, table2])
    session.commit()

    issue_qr_code(session, table1, now=NOW - timedelta(days=1))
    issue_qr_code(session, table2, now=NOW - timedelta(days=1))

    for obj in (kitchen, bar, pastry, pizza, juice, cake, mug):
        session.refresh(obj)

    return {
        "kitchen": kitchen,
        "bar": bar,
        "pastry": pastry,
        "pizza": pizza,
        "juice": juice,
        "cake": cake,
        "mug": mug,
        "table1": table1,
        "table2": table2,
    }


@pytest.fixture
def router(session, catalog) -> StationRouter:
    return StationRouter.from_session(session)


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


def scan_table(session, table, device_id="device-1", now=NOW):
    return scan(session, table.qr_code, DeviceContext(device_id=device_id, user_agent="pytest"), now=now)


@pytest.fixture
def customer_token(session, catalog) -> str:
    """Session token of a customer who scanned table 1."""
    return scan_table(session, catalog["table1"]).customer.session_token


@pytest.fixture
def pending_order(session, pricing_config, notifier, catalog, customer_token):
    """The pizza + juice order: subtotal 28000, total 32956."""
    placement = place_order(
        session,
        pricing_config,
        notifier,
        customer_token,
        [
            OrderItemCreate(menu_id=catalog["pizza"].id, quantity=1),
            OrderItemCreate(menu_id=catalog["juice"].id, quantity=1),
        ],
        email="guest@example.com",
        now=NOW,
    )
    return placement.order


@pytest.fixture
def paid_order(session, pending_order, router, notifier, publisher):
    order, _ = validate_cash_payment(
        session, pending_order.id, notifier=notifier, publisher=publisher, router=router, now=NOW
    )
    return order


@pytest.fixture(scope="function")
def client(engine, pricing_config, notifier, publisher, gateway) -> Generator[TestClient, None, None]:
    """Test client with the database and collaborators swapped for test doubles."""
    def override_get_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.state.pricing_config = pricing_config
    app.state.router = None
    app.state.notifier = notifier
    app.state.publisher = publisher
    app.state.gateway = gateway
    # Built without the context manager so startup does not touch the real database
    test_client = TestClient(app, raise_server_exceptions=False)
    yield test_client
    app.dependency_overrides.clear()
    for name in ("pricing_config", "router", "notifier", "publisher", "gateway"):
        setattr(app.state, name, None)
