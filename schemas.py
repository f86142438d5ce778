import datetime as dt
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter

from models import CurrencyCode, TransactionType

HEX_COLOR_PATTERN = r"^#(?:[0-9a-fA-F]{3}){1,2}$"


def _coerce_date(value: object) -> object:
    # Accept full ISO timestamps where a calendar date is expected.
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and len(value) > 10:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        except ValueError:
            return value
    return value


def _coerce_currency(value: object) -> object:
    if isinstance(value, str):
        return value.strip().upper() or None
    return value


def _coerce_type(value: object) -> object:
    if isinstance(value, str):
        return value.strip().upper()
    return value


CalendarDate = Annotated[dt.date, BeforeValidator(_coerce_date)]
Currency = Annotated[CurrencyCode, BeforeValidator(_coerce_currency)]
TxnType = Annotated[TransactionType, BeforeValidator(_coerce_type)]


class TransactionIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    date: CalendarDate
    occurred_at: Optional[datetime] = None
    type: TxnType
    amount: Decimal = Field(..., ge=0, max_digits=14, decimal_places=2)
    currency: Optional[Currency] = None
    description: Optional[str] = Field(default=None, max_length=500)
    tags: list[str] = Field(default_factory=list)


class BulkTransactionIn(BaseModel):
    """One element of a bulk import request; unknown keys are ignored."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    amount: Decimal = Field(..., ge=0)
    currency: Optional[Currency] = None
    type: TxnType
    description: str = Field(..., min_length=1, max_length=500)
    date: CalendarDate
    tags: list[str] = Field(default_factory=list)


class BulkImportResult(BaseModel):
    success: bool = True
    created: int
    errors: list[str]
    total: int


class BulkDeleteIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transaction_ids: list[Any] = Field(..., alias="transactionIds")


class BulkDeleteResult(BaseModel):
    success: bool = True
    deleted: int
    errors: list[str]
    total: int


# Per-row tags for a CSV commit, keyed by source row number.
CSVRowTags = TypeAdapter(dict[int, list[str]])


class CSVImportResult(BaseModel):
    success: bool = True
    created: int
    skipped: list[str]
    warnings: list[str]
    total: int


class TagIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=50)


class TagColorIn(BaseModel):
    color: str = Field(..., pattern=HEX_COLOR_PATTERN)


class TagBudgetItemIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    tag: str = Field(..., min_length=1, max_length=50)
    amount: Decimal = Field(..., ge=0, max_digits=14, decimal_places=2)


class TagBudgetIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=120)
    items: list[TagBudgetItemIn] = Field(..., min_length=1)


class BudgetReorderIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    budget_ids: list[Any] = Field(..., alias="budgetIds")
