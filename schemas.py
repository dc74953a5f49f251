from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import Direction, LinkStatus, Origin

DAY_PATTERN = r"^\d{4}-\d{2}-\d{2}$"
MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


def _check_day(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    date.fromisoformat(value)
    return value


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    budget_amount_cents: int = Field(..., ge=0)
    period: Optional[str] = Field(default=None, pattern=MONTH_PATTERN)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    budget_amount_cents: Optional[int] = Field(default=None, ge=0)
    period: Optional[str] = Field(default=None, pattern=MONTH_PATTERN)


class TransactionIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    direction: Direction = Direction.expense
    category: str = Field(..., min_length=1, max_length=100)
    subcategory: Optional[str] = Field(default=None, max_length=100)
    merchant: str = Field(..., min_length=1, max_length=200)
    account: str = Field(default="Manual", min_length=1, max_length=100)
    occurred_on: str = Field(..., pattern=DAY_PATTERN)
    notes: Optional[str] = Field(default=None, max_length=1000)

    _validate_day = field_validator("occurred_on")(_check_day)


class TransactionPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(default=None, gt=0)
    direction: Optional[Direction] = None
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    subcategory: Optional[str] = Field(default=None, max_length=100)
    merchant: Optional[str] = Field(default=None, min_length=1, max_length=200)
    account: Optional[str] = Field(default=None, min_length=1, max_length=100)
    occurred_on: Optional[str] = Field(default=None, pattern=DAY_PATTERN)
    notes: Optional[str] = Field(default=None, max_length=1000)

    _validate_day = field_validator("occurred_on")(_check_day)


class ImportRowIn(BaseModel):
    """One already-parsed row from a bank statement upload.

    ``amount_cents`` is signed: negative amounts are expenses.
    """

    occurred_on: str = Field(..., pattern=DAY_PATTERN)
    amount_cents: int
    merchant: str = Field(..., min_length=1, max_length=200)
    direction: Optional[Direction] = None
    category: Optional[str] = Field(default=None, max_length=100)
    subcategory: Optional[str] = Field(default=None, max_length=100)
    account: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=1000)

    _validate_day = field_validator("occurred_on")(_check_day)


class ImportIn(BaseModel):
    rows: list[ImportRowIn] = Field(..., min_length=1)


class GoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    target_amount_cents: int = Field(..., gt=0)
    current_amount_cents: int = Field(default=0, ge=0)
    target_date: Optional[str] = Field(default=None, pattern=DAY_PATTERN)

    _validate_day = field_validator("target_date")(_check_day)


class GoalUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    target_amount_cents: Optional[int] = Field(default=None, gt=0)
    current_amount_cents: Optional[int] = Field(default=None, ge=0)
    target_date: Optional[str] = Field(default=None, pattern=DAY_PATTERN)

    _validate_day = field_validator("target_date")(_check_day)


class ContributionIn(BaseModel):
    amount_cents: int = Field(..., gt=0)


class LinkExchangeIn(BaseModel):
    public_token: str = Field(..., min_length=1)
    institution_id: Optional[str] = Field(default=None, max_length=64)
    institution_name: Optional[str] = Field(default=None, max_length=200)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    budget_amount_cents: int
    amount_spent_cents: int
    remaining_cents: int
    period: str


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount_cents: int
    direction: Direction
    category: str
    subcategory: Optional[str]
    merchant: str
    account: str
    occurred_on: str
    origin: Origin
    possible_duplicate: bool
    notes: Optional[str]


class ContributionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    month: str
    amount_cents: int


class GoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    target_amount_cents: int
    current_amount_cents: int
    target_date: Optional[str]
    progress_percentage: Decimal
    contributions: list[ContributionOut]


class ScoreOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    score: int
    budget_adherence: float
    savings_progress: float
    engagement: float
    goals_completed: float
    cash_flow: float
    computed_at: datetime


class ExternalAccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    account_id: str
    name: str
    official_name: Optional[str]
    type: str
    subtype: Optional[str]
    mask: Optional[str]
    available_balance_cents: Optional[int]
    current_balance_cents: Optional[int]
    iso_currency_code: Optional[str]


class LinkOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_id: str
    institution_id: Optional[str]
    institution_name: Optional[str]
    status: LinkStatus
    last_synced_at: Optional[datetime]
    accounts: list[ExternalAccountOut]


class ImportResultOut(BaseModel):
    imported: int
    duplicates: int
    errors: list[str]
    warnings: list[str] = Field(default_factory=list)


class SyncResultOut(BaseModel):
    fetched: int
    added: int
    flagged: int
    skipped: int
    removed: int = 0
    warnings: list[str] = Field(default_factory=list)
