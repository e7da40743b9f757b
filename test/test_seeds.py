from sqlmodel import select

from tableorder.models import Category, Menu, Setting, Station, Table
from tableorder.seeds import seed
from tableorder.sessions import parse_qr_value
from tableorder.stations import StationRouter


def test_seed_creates_routable_catalog(session):
    result = seed(session, table_count=3)

    assert result == {"categories_created": 3, "menus_created": 8, "tables_created": 3}
    router = StationRouter.from_session(session)
    for station in Station:
        assert len(router.category_ids(station)) == 1

    tables = session.exec(select(Table).order_by(Table.table_number)).all()
    assert [parse_qr_value(t.qr_code)[0] for t in tables] == [1, 2, 3]
    assert len(session.exec(select(Setting)).all()) == 2


def test_seed_is_idempotent(session):
    seed(session, table_count=2)
    result = seed(session, table_count=2)

    assert result == {"categories_created": 0, "menus_created": 0, "tables_created": 0}
    assert len(session.exec(select(Category)).all()) == 3
    assert len(session.exec(select(Menu)).all()) == 8
