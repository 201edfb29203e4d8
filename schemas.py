from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import get_settings
from models import local_now

# amount_cents is a 32-bit INTEGER column
MAX_AMOUNT_CENTS = 2_147_483_647

DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y")


def parse_datetime(value: str) -> datetime:
    value = value.strip()
    if not value:
        raise ValueError("Missing date")
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        pass
    else:
        if parsed.tzinfo is not None:
            local = ZoneInfo(get_settings().timezone)
            parsed = parsed.astimezone(local).replace(tzinfo=None)
        return parsed
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise ValueError(f"Invalid date: {value}")


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, max_length=9)
    text_color: Optional[str] = Field(default=None, max_length=9)
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        clean = value.strip()
        if not clean:
            raise ValueError("Category name cannot be empty")
        return clean


class CategoryUpdate(BaseModel):
    """Partial category update; only fields that were set are written."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, max_length=9)
    text_color: Optional[str] = Field(default=None, max_length=9)
    description: Optional[str] = Field(default=None, max_length=500)


class ExpenseIn(BaseModel):
    name: str = Field(default="", max_length=200)
    date: datetime = Field(default_factory=local_now)
    amount_cents: int = Field(..., gt=0, le=MAX_AMOUNT_CENTS)
    category_id: Optional[str] = None

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, value):
        if isinstance(value, str):
            return parse_datetime(value)
        return value

    @field_validator("category_id", mode="before")
    @classmethod
    def _blank_category_is_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ExpenseUpdate(BaseModel):
    """Partial expense update; `category_id=None` detaches the category."""

    name: Optional[str] = Field(default=None, max_length=200)
    date: Optional[datetime] = None
    amount_cents: Optional[int] = Field(default=None, gt=0, le=MAX_AMOUNT_CENTS)
    category_id: Optional[str] = None

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, value):
        if isinstance(value, str):
            return parse_datetime(value)
        return value

    @field_validator("category_id", mode="before")
    @classmethod
    def _blank_category_is_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ApiCategoryIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=500)
    color: str = Field(..., min_length=1, max_length=9)
    text_color: str = Field(..., min_length=1, max_length=9)


class ApiExpenseIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=200)
    # JSON booleans and numeric strings are not amounts
    amount_cents: int = Field(..., gt=0, le=MAX_AMOUNT_CENTS, strict=True)
    date: datetime
    category_id: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value):
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, value):
        if isinstance(value, str):
            return parse_datetime(value)
        return value


class RegisterIn(BaseModel):
    username: str = Field(..., min_length=3, max_length=64, pattern=r"^[A-Za-z0-9_.-]+$")
    password: str = Field(..., min_length=6, max_length=255)
    age: Optional[int] = Field(default=None, ge=0, le=150)


class CSVRow(BaseModel):
    date: datetime
    name: str
    amount_cents: int = Field(..., gt=0)
    category: Optional[str]
