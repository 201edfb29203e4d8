from __future__ import annotations

import logging
from typing import Iterable, Optional

from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.orm import Session, joinedload

from csv_utils import export_expenses, parse_csv
from models import Category, Expense
from schemas import CategoryIn, CategoryUpdate, ExpenseIn, ExpenseUpdate

logger = logging.getLogger(__name__)


class CategoryNotFound(ValueError):
    def __init__(self, message: str = "Category not found") -> None:
        super().__init__(message)


class ExpenseNotFound(ValueError):
    def __init__(self, message: str = "Expense not found") -> None:
        super().__init__(message)


class CategoryHasExpenses(ValueError):
    code = "category_has_expenses"

    def __init__(self, message: str = "Category has associated expenses") -> None:
        super().__init__(message)


def summarize_amounts(amounts: Iterable[int]) -> dict[str, float]:
    """Total, average and median of cent amounts; all zero for no amounts."""
    ordered = sorted(amounts)
    count = len(ordered)
    if count == 0:
        return {"total": 0, "average": 0, "median": 0}
    total = sum(ordered)
    mid = count // 2
    if count % 2:
        median: float = ordered[mid]
    else:
        median = (ordered[mid - 1] + ordered[mid]) / 2
    return {"total": total, "average": total / count, "median": median}


class CategoryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.created_at, Category.id)
        )
        return list(self.session.scalars(stmt).all())

    def find(self, category_id: str) -> Optional[Category]:
        return self.session.scalar(
            select(Category).where(
                Category.id == category_id, Category.user_id == self.user_id
            )
        )

    def get(self, category_id: str) -> Category:
        category = self.find(category_id)
        if not category:
            raise CategoryNotFound()
        return category

    def create(self, data: CategoryIn) -> Category:
        category = Category(
            user_id=self.user_id,
            name=data.name,
            color=data.color,
            text_color=data.text_color,
            description=data.description,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: str, data: CategoryUpdate) -> Category:
        values = data.model_dump(exclude_unset=True)
        if "name" in values:
            if values["name"] is None or not values["name"].strip():
                raise ValueError("Category name cannot be empty")
            values["name"] = values["name"].strip()
        if not values:
            return self.get(category_id)
        result = self.session.execute(
            update(Category)
            .where(Category.id == category_id, Category.user_id == self.user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.session.rollback()
            raise CategoryNotFound()
        self.session.commit()
        category = self.get(category_id)
        self.session.refresh(category)
        return category

    def delete(self, category_id: str) -> None:
        in_use = exists().where(Expense.category_id == category_id)
        result = self.session.execute(
            delete(Category)
            .where(
                Category.id == category_id,
                Category.user_id == self.user_id,
                ~in_use,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.session.rollback()
            if self.find(category_id) is not None:
                logger.info(
                    f"category_delete_blocked: category={category_id} user={self.user_id}"
                )
                raise CategoryHasExpenses()
            raise CategoryNotFound()
        self.session.commit()


class ExpenseService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _base_query(self):
        return (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(Expense.user_id == self.user_id)
            .order_by(Expense.date.desc(), Expense.created_at.desc(), Expense.id)
        )

    def _check_categories(self, category_ids: set[str]) -> None:
        if not category_ids:
            return
        owned = set(
            self.session.scalars(
                select(Category.id).where(
                    Category.user_id == self.user_id, Category.id.in_(category_ids)
                )
            ).all()
        )
        if owned != category_ids:
            raise CategoryNotFound()

    def _build(self, data: ExpenseIn) -> Expense:
        return Expense(
            user_id=self.user_id,
            name=data.name.strip(),
            date=data.date,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
        )

    def create(self, data: ExpenseIn) -> Expense:
        self._check_categories({data.category_id} if data.category_id else set())
        expense = self._build(data)
        self.session.add(expense)
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def create_many(self, items: list[ExpenseIn]) -> int:
        if not items:
            return 0
        self._check_categories({item.category_id for item in items if item.category_id})
        self.session.add_all([self._build(item) for item in items])
        self.session.commit()
        return len(items)

    def list(self) -> list[Expense]:
        return list(self.session.scalars(self._base_query()).all())

    def list_by_category(
        self, category_id: Optional[str], *, owned_only: bool = True
    ) -> list[Expense]:
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .order_by(Expense.date.desc(), Expense.created_at.desc(), Expense.id)
        )
        if category_id is None:
            stmt = stmt.where(Expense.category_id.is_(None))
        else:
            stmt = stmt.where(Expense.category_id == category_id)
        if owned_only:
            stmt = stmt.where(Expense.user_id == self.user_id)
        return list(self.session.scalars(stmt).all())

    def get(self, expense_id: str) -> Expense:
        expense = self.session.scalar(
            self._base_query().where(Expense.id == expense_id)
        )
        if not expense:
            raise ExpenseNotFound()
        return expense

    def update(self, expense_id: str, data: ExpenseUpdate) -> Expense:
        values = data.model_dump(exclude_unset=True)
        for field in ("date", "amount_cents"):
            if field in values and values[field] is None:
                raise ValueError(f"{field} cannot be empty")
        if "name" in values:
            values["name"] = (values["name"] or "").strip()
        if values.get("category_id"):
            self._check_categories({values["category_id"]})
        if not values:
            return self.get(expense_id)
        result = self.session.execute(
            update(Expense)
            .where(Expense.id == expense_id, Expense.user_id == self.user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.session.rollback()
            raise ExpenseNotFound()
        self.session.commit()
        expense = self.get(expense_id)
        self.session.refresh(expense)
        return expense

    def delete(self, expense_id: str) -> None:
        result = self.session.execute(
            delete(Expense)
            .where(Expense.id == expense_id, Expense.user_id == self.user_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.session.rollback()
            raise ExpenseNotFound()
        self.session.commit()

    def summary(self, category_id: Optional[str] = None) -> dict[str, float]:
        stmt = (
            select(Expense.amount_cents)
            .where(Expense.user_id == self.user_id)
        )
        if category_id is not None:
            stmt = stmt.where(Expense.category_id == category_id)
        return summarize_amounts(self.session.scalars(stmt).all())

    def most_frequent_categories(self) -> list[dict[str, object]]:
        count = func.count(Expense.id).label("count")
        stmt = (
            select(Expense.category_id, Category.name, count)
            .outerjoin(Category, Category.id == Expense.category_id)
            .where(Expense.user_id == self.user_id)
            .group_by(Expense.category_id, Category.name)
            .order_by(count.desc(), Category.name)
        )
        return [
            {"category_id": row.category_id, "name": row.name, "count": int(row.count)}
            for row in self.session.execute(stmt).all()
        ]

    def biggest_categories(self) -> list[dict[str, object]]:
        total = func.sum(Expense.amount_cents).label("amount_cents")
        stmt = (
            select(Expense.category_id, Category.name, total)
            .outerjoin(Category, Category.id == Expense.category_id)
            .where(Expense.user_id == self.user_id)
            .group_by(Expense.category_id, Category.name)
            .order_by(total.desc(), Category.name)
        )
        return [
            {
                "category_id": row.category_id,
                "name": row.name,
                "amount_cents": int(row.amount_cents or 0),
            }
            for row in self.session.execute(stmt).all()
        ]


class CSVService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def export(self) -> str:
        return export_expenses(ExpenseService(self.session, self.user_id).list())

    def commit(self, content: str) -> int:
        rows, errors = parse_csv(content)
        if errors:
            raise ValueError("; ".join(errors))
        if not rows:
            raise ValueError("No expenses found in file")

        categories = CategoryService(self.session, self.user_id)
        by_name = {c.name.lower(): c for c in categories.list_all()}
        items: list[ExpenseIn] = []
        for row in rows:
            category_id = None
            if row.category:
                key = row.category.lower()
                if key not in by_name:
                    by_name[key] = Category(user_id=self.user_id, name=row.category)
                    self.session.add(by_name[key])
                    self.session.flush()
                category_id = by_name[key].id
            items.append(
                ExpenseIn(
                    name=row.name,
                    date=row.date,
                    amount_cents=row.amount_cents,
                    category_id=category_id,
                )
            )
        return ExpenseService(self.session, self.user_id).create_many(items)
