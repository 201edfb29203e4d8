import csv
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from io import StringIO
from typing import Sequence

from models import Expense
from schemas import MAX_AMOUNT_CENTS, CSVRow, parse_datetime

CURRENCY_MARKERS = ("₴", "uah", "грн.", "грн")


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_amount(value: str) -> int:
    """Parse a major-unit amount ("12,50", "10.005 грн") into positive cents.

    Half-cents round away from zero, so "10.005" becomes 1001.
    """
    clean = value.strip().lower()
    for marker in CURRENCY_MARKERS:
        clean = clean.replace(marker, "")
    clean = re.sub(r"\s+", "", clean).replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    if not clean:
        raise ValueError("Invalid amount")
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValueError("Invalid amount")
    if amount * 100 > MAX_AMOUNT_CENTS:
        raise ValueError("Amount is too large")
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents <= 0:
        raise ValueError("Invalid amount")
    return cents


def parse_csv(content: str) -> tuple[list[CSVRow], list[str]]:
    reader = csv.DictReader(StringIO(content))
    rows: list[CSVRow] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=1):
        try:
            date_value = parse_datetime(raw.get("Date") or "")
            name = (raw.get("Name") or "").strip()
            amount_value = parse_amount(raw.get("Amount") or "")
            category_raw = (raw.get("Category") or "").strip()
            rows.append(
                CSVRow(
                    date=date_value,
                    name=name,
                    amount_cents=amount_value,
                    category=category_raw or None,
                )
            )
        except Exception as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors


def export_expenses(expenses: Sequence[Expense]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["Date", "Name", "Amount", "Category"])
    for expense in expenses:
        writer.writerow(
            [
                expense.date.isoformat(sep=" ", timespec="minutes"),
                sanitize_csv_value(expense.name or ""),
                f"{Decimal(expense.amount_cents) / 100:.2f}",
                sanitize_csv_value(expense.category.name if expense.category else ""),
            ]
        )
    return output.getvalue()
