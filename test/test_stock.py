"""Tests for stock validation, reservation and staff restocks."""

import pytest
from sqlalchemy import update

from tableorder.errors import StockInsufficient, StockRaceLost, ValidationFailed
from tableorder.models import Menu, Station
from tableorder.stock import check_stock, low_stock_count, reserve_stock, restock


def test_check_stock_passes_and_writes_nothing(session, catalog):
    pizza = catalog["pizza"]
    lines = check_stock(session, [(pizza.id, 3)])
    assert [(line.menu.id, line.quantity) for line in lines] == [(pizza.id, 3)]
    session.refresh(pizza)
    assert pizza.stock_quantity == 10


def test_quantities_for_the_same_menu_are_summed(session, catalog):
    cake = catalog["cake"]
    with pytest.raises(StockInsufficient) as exc_info:
        check_stock(session, [(cake.id, 1), (cake.id, 1)])
    assert exc_info.value.stock_errors == [{
        "menu_id": cake.id,
        "menu_name": "Chocolate Cake",
        "requested": 2,
        "available": 1,
        "reason": "insufficient_stock",
    }]


def test_insufficient_stock_reports_every_line(session, catalog):
    pizza, juice, cake = catalog["pizza"], catalog["juice"], catalog["cake"]
    juice.is_available = False
    session.add(juice)
    session.commit()

    with pytest.raises(StockInsufficient) as exc_info:
        check_stock(session, [(pizza.id, 1), (juice.id, 1), (cake.id, 5)])

    error = exc_info.value
    reasons = {e["menu_id"]: e["reason"] for e in error.stock_errors}
    assert reasons == {juice.id: "unavailable", cake.id: "insufficient_stock"}
    assert error.available_items == [{"menu_id": pizza.id, "menu_name": "Pizza", "available_stock": 10}]
    assert error.to_dict()["kind"] == "StockInsufficient"


def test_unknown_menu(session, catalog):
    with pytest.raises(ValidationFailed) as exc_info:
        check_stock(session, [(9999, 1)])
    assert exc_info.value.detail == {"menu_ids": [9999]}


@pytest.mark.parametrize("quantity", [0, -1])
def test_quantity_must_be_positive(session, catalog, quantity):
    with pytest.raises(ValidationFailed):
        check_stock(session, [(catalog["pizza"].id, quantity)])


def test_empty_request(session, catalog):
    with pytest.raises(ValidationFailed):
        check_stock(session, [])


def test_reserve_decrements(session, catalog):
    pizza, juice = catalog["pizza"], catalog["juice"]
    lines = check_stock(session, [(pizza.id, 2), (juice.id, 10)])
    reserve_stock(session, lines)
    session.commit()

    assert session.get(Menu, pizza.id).stock_quantity == 8
    assert session.get(Menu, juice.id).stock_quantity == 0


def test_reserve_loses_race_when_stock_moved(session, catalog):
    cake = catalog["cake"]
    lines = check_stock(session, [(cake.id, 1)])

    # Someone else takes the last unit between check and reserve
    session.exec(
        update(Menu)
        .where(Menu.id == cake.id)
        .values(stock_quantity=0)
        .execution_options(synchronize_session=False)
    )

    with pytest.raises(StockRaceLost):
        reserve_stock(session, lines)
    session.rollback()
    assert session.get(Menu, cake.id).stock_quantity == 1


def test_restock_updates_fields(session, catalog, router):
    menu, updated = restock(
        session,
        catalog["cake"].id,
        station=Station.pastry,
        router=router,
        stock_quantity=12,
        minimum_stock=3,
        is_available=False,
    )
    assert updated == {"stock_quantity": 12, "minimum_stock": 3, "is_available": False}
    assert menu.stock_quantity == 12
    assert menu.is_available is False


def test_restock_rejects_other_station(session, catalog, router):
    with pytest.raises(ValidationFailed) as exc_info:
        restock(session, catalog["pizza"].id, station=Station.bar, router=router, stock_quantity=5)
    assert "kitchen" in exc_info.value.message


def test_restock_rejects_negative_stock(session, catalog):
    with pytest.raises(ValidationFailed):
        restock(session, catalog["pizza"].id, stock_quantity=-1)


def test_restock_unknown_menu(session, catalog):
    with pytest.raises(ValidationFailed):
        restock(session, 9999, stock_quantity=1)


def test_low_stock_count(session, catalog, router):
    # Cake: 1 left with a minimum of 2
    assert low_stock_count(session, router.category_ids(Station.pastry)) == 1
    assert low_stock_count(session, router.category_ids(Station.kitchen)) == 0
    assert low_stock_count(session, []) == 0
