from datetime import datetime

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, build_engine
from models import User
from schemas import CategoryIn, ExpenseIn
from services import CategoryService, ExpenseService, summarize_amounts


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


def test_summarize_amounts_odd_count() -> None:
    assert summarize_amounts([3000, 1000, 2000]) == {
        "total": 6000,
        "average": 2000,
        "median": 2000,
    }


def test_summarize_amounts_even_count_averages_middle_pair() -> None:
    result = summarize_amounts([2000, 1000])
    assert result["total"] == 3000
    assert result["median"] == 1500
    assert result["average"] == pytest.approx(1500)


def test_summarize_amounts_empty_is_all_zero() -> None:
    assert summarize_amounts([]) == {"total": 0, "average": 0, "median": 0}


def test_summary_matches_manual_aggregation() -> None:
    session = make_session()
    user = make_user(session)
    amounts = [1999, 1, 450, 450, 12000, 7]
    service = ExpenseService(session, user.id)
    service.create_many(
        [
            ExpenseIn(name=f"e{i}", date=datetime(2025, 3, i + 1), amount_cents=amount)
            for i, amount in enumerate(amounts)
        ]
    )

    summary = service.summary()

    assert summary["total"] == sum(amounts)
    assert summary["average"] == pytest.approx(sum(amounts) / len(amounts))
    assert summary["median"] == 450


def test_summary_with_no_expenses_does_not_divide_by_zero() -> None:
    session = make_session()
    user = make_user(session)
    assert ExpenseService(session, user.id).summary() == {
        "total": 0,
        "average": 0,
        "median": 0,
    }


def test_summary_ignores_other_users_and_can_scope_to_category() -> None:
    session = make_session()
    alice = make_user(session)
    bob = make_user(session, "bob")
    food = CategoryService(session, alice.id).create(CategoryIn(name="Food"))
    alice_expenses = ExpenseService(session, alice.id)
    alice_expenses.create(
        ExpenseIn(name="Lunch", amount_cents=1000, category_id=food.id)
    )
    alice_expenses.create(
        ExpenseIn(name="Dinner", amount_cents=2000, category_id=food.id)
    )
    alice_expenses.create(ExpenseIn(name="Bus", amount_cents=300))
    ExpenseService(session, bob.id).create(ExpenseIn(name="Car", amount_cents=99999))

    assert alice_expenses.summary()["total"] == 3300
    food_summary = alice_expenses.summary(food.id)
    assert food_summary == {"total": 3000, "average": 1500, "median": 1500}
