from datetime import datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from csv_utils import parse_csv, sanitize_csv_value
from database import Base, build_engine
from models import Category, Expense, User
from schemas import CategoryIn, ExpenseIn
from services import CategoryService, CSVService, ExpenseService


def make_session():
    engine = build_engine("sqlite+pysqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_user(session, username: str = "alice") -> User:
    user = User(username=username, password_hash="x")
    session.add(user)
    session.commit()
    return user


def test_sanitize_csv_value_neutralizes_formulas() -> None:
    assert sanitize_csv_value("=SUM(A1:A2)") == "\t=SUM(A1:A2)"
    assert sanitize_csv_value("cmd /c calc") == "\tcmd /c calc"
    assert sanitize_csv_value("Groceries") == "Groceries"
    assert sanitize_csv_value("   ") == ""


def test_export_writes_one_row_per_expense() -> None:
    session = make_session()
    user = make_user(session)
    food = CategoryService(session, user.id).create(CategoryIn(name="Food"))
    ExpenseService(session, user.id).create_many(
        [
            ExpenseIn(
                name="Lunch",
                date=datetime(2025, 1, 5, 12, 30),
                amount_cents=1299,
                category_id=food.id,
            ),
            ExpenseIn(name="Bus", date=datetime(2025, 1, 4, 8, 0), amount_cents=800),
        ]
    )

    lines = CSVService(session, user.id).export().splitlines()

    assert lines == [
        "Date,Name,Amount,Category",
        "2025-01-05 12:30,Lunch,12.99,Food",
        "2025-01-04 08:00,Bus,8.00,",
    ]


def test_parse_csv_reports_bad_rows_by_number() -> None:
    content = (
        "Date,Name,Amount,Category\n"
        "2025-01-05,Lunch,12.99,Food\n"
        "not-a-date,Dinner,10,Food\n"
        "2025-01-06,Refund,-5,\n"
    )

    rows, errors = parse_csv(content)

    assert [row.name for row in rows] == ["Lunch"]
    assert len(errors) == 2
    assert errors[0].startswith("Row 2:")
    assert errors[1].startswith("Row 3:")


def test_import_creates_missing_categories_case_insensitively() -> None:
    session = make_session()
    user = make_user(session)
    CategoryService(session, user.id).create(CategoryIn(name="Food"))
    content = (
        "Date,Name,Amount,Category\n"
        "2025-01-05,Lunch,\"12,99\",food\n"
        "05.01.2025,Taxi,150 грн,Travel\n"
        "2025-01-06,Train,20.005,travel\n"
        "2025-01-07,Gum,1,\n"
    )

    created = CSVService(session, user.id).commit(content)

    assert created == 4
    names = sorted(c.name for c in CategoryService(session, user.id).list_all())
    assert names == ["Food", "Travel"]
    amounts = sorted(e.amount_cents for e in ExpenseService(session, user.id).list())
    assert amounts == [100, 1299, 2001, 15000]


def test_import_with_an_invalid_row_writes_nothing() -> None:
    session = make_session()
    user = make_user(session)
    content = (
        "Date,Name,Amount,Category\n"
        "2025-01-05,Lunch,12.99,Food\n"
        "2025-01-06,Broken,0,Food\n"
    )

    with pytest.raises(ValueError, match="Row 2"):
        CSVService(session, user.id).commit(content)

    assert session.scalar(select(func.count(Expense.id))) == 0
    assert session.scalar(select(func.count(Category.id))) == 0


def test_import_of_empty_file_is_rejected() -> None:
    session = make_session()
    user = make_user(session)

    with pytest.raises(ValueError, match="No expenses"):
        CSVService(session, user.id).commit("Date,Name,Amount,Category\n")
