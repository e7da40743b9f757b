"""
Seed station categories, a starter menu, tables with QR codes and pricing settings.

Usage:
    python -m tableorder.seeds
    python -m tableorder.seeds --tables 20
"""

import argparse
from decimal import Decimal

from sqlmodel import Session, select

from .config_store import seed_default_settings
from .db import create_db_and_tables, engine
from .models import Category, Menu, Table
from .sessions import issue_qr_code

STATION_CATEGORIES = {
    "Kitchen": "Hot food from the kitchen",
    "Bar": "Drinks and juices",
    "Pastry": "Cakes and desserts",
}

STARTER_MENU = {
    "Kitchen": [
        ("Nasi Goreng", "35000", 30, 15),
        ("Mie Goreng", "32000", 30, 15),
        ("Pizza Margherita", "20000", 20, 20),
    ],
    "Bar": [
        ("Orange Juice", "8000", 50, 5),
        ("Iced Tea", "6000", 80, 3),
        ("Espresso", "15000", 60, 4),
    ],
    "Pastry": [
        ("Chocolate Cake", "25000", 15, 5),
        ("Croissant", "12000", 25, 3),
    ],
}


def seed(session: Session, table_count: int = 10) -> dict:
    result = {"categories_created": 0, "menus_created": 0, "tables_created": 0}

    for order, (name, description) in enumerate(STATION_CATEGORIES.items()):
        category = session.exec(select(Category).where(Category.name == name)).first()
        if not category:
            category = Category(name=name, description=description, display_order=order)
            session.add(category)
            session.commit()
            session.refresh(category)
            result["categories_created"] += 1
            print(f"Created category: {name}")

        for position, (menu_name, price, stock, prep) in enumerate(STARTER_MENU[name]):
            exists = session.exec(
                select(Menu).where(Menu.category_id == category.id).where(Menu.name == menu_name)
            ).first()
            if exists:
                continue
            session.add(Menu(
                category_id=category.id,
                name=menu_name,
                price=Decimal(price),
                stock_quantity=stock,
                minimum_stock=5,
                preparation_time=prep,
                display_order=position,
            ))
            result["menus_created"] += 1
        session.commit()

    for number in range(1, table_count + 1):
        table = session.exec(select(Table).where(Table.table_number == number)).first()
        if table:
            continue
        table = Table(table_number=number)
        session.add(table)
        session.commit()
        session.refresh(table)
        issue_qr_code(session, table)
        result["tables_created"] += 1
        print(f"Created table {number}: {table.qr_code}")

    seed_default_settings(session)
    return result


def main():
    parser = argparse.ArgumentParser(description="Seed demo data")
    parser.add_argument("--tables", type=int, default=10, help="Number of tables to create")
    args = parser.parse_args()

    print("Seeding station categories, menu and tables...")
    create_db_and_tables()
    with Session(engine) as session:
        result = seed(session, table_count=args.tables)
    print("\nComplete!")
    print(f"  Categories created: {result['categories_created']}")
    print(f"  Menus created: {result['menus_created']}")
    print(f"  Tables created: {result['tables_created']}")


if __name__ == "__main__":
    main()
