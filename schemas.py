import datetime as dt
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import ActivityAction, ExpenseCategory, RecordKind, RecurringKind


class TemplateIn(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    default_amount_cents: int = Field(..., gt=0)


class TemplatePatch(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    default_amount_cents: Optional[int] = Field(default=None, gt=0)


class SalaryIn(BaseModel):
    default_amount_cents: int = Field(..., gt=0)


class InstancePatch(BaseModel):
    amount_cents: Optional[int] = Field(default=None, ge=0)
    enabled: Optional[bool] = None


class ExpenseIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    description: str = Field(default="", max_length=200)
    category: ExpenseCategory = ExpenseCategory.other
    date: dt.date


class ExpensePatch(BaseModel):
    amount_cents: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, max_length=200)
    category: Optional[ExpenseCategory] = None
    date: Optional[dt.date] = None


class ExpenseIngestIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    description: str = Field(default="", max_length=200)
    category: Optional[str] = Field(default=None, max_length=100)
    date: Optional[dt.date] = None


class OneTimeInvestmentIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=200)
    date: dt.date


class OneTimeInvestmentPatch(BaseModel):
    amount_cents: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    date: Optional[dt.date] = None


class TemplateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: RecurringKind
    name: Optional[str]
    default_amount_cents: int
    created_at: datetime
    updated_at: datetime


class InstanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    template_id: int
    kind: RecurringKind
    month: str
    amount_cents: int
    enabled: bool
    created_at: datetime
    updated_at: datetime


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    user_id: str
    date: dt.date
    amount_cents: int
    description: str
    category: ExpenseCategory
    created_at: datetime
    updated_at: datetime


class OneTimeInvestmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    user_id: str
    date: dt.date
    amount_cents: int
    description: str
    created_at: datetime
    updated_at: datetime


class ActivityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: RecordKind
    action: ActivityAction
    record_id: int
    details: str
    created_at: datetime


class MonthlyStats(BaseModel):
    month: str
    by_category: dict[ExpenseCategory, int]
    variable_expenses_total: int = 0
    fixed_costs_total: int = 0
    income: int = 0
    investments_total: int = 0
    savings: int = 0
    count: int = 0

    @classmethod
    def empty(cls, month: str) -> "MonthlyStats":
        return cls(month=month, by_category={c: 0 for c in ExpenseCategory})


class MonthlyOverview(BaseModel):
    current: MonthlyStats
    previous: MonthlyStats
