import datetime as dt
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RecurringKind(str, Enum):
    fixed_cost = "fixed_cost"
    investment = "investment"
    salary = "salary"


class RecordKind(str, Enum):
    expense = "expense"
    one_time_investment = "one_time_investment"


class ExpenseCategory(str, Enum):
    food = "food"
    transport = "transport"
    shopping = "shopping"
    entertainment = "entertainment"
    utilities = "utilities"
    health = "health"
    travel = "travel"
    subscriptions = "subscriptions"
    groceries = "groceries"
    fuel = "fuel"
    electronics = "electronics"
    other = "other"


CATEGORY_LABELS: dict[ExpenseCategory, str] = {
    ExpenseCategory.food: "Food & Dining",
    ExpenseCategory.transport: "Transport",
    ExpenseCategory.shopping: "Shopping",
    ExpenseCategory.entertainment: "Entertainment",
    ExpenseCategory.utilities: "Utilities",
    ExpenseCategory.health: "Health",
    ExpenseCategory.travel: "Travel",
    ExpenseCategory.subscriptions: "Subscriptions",
    ExpenseCategory.groceries: "Groceries",
    ExpenseCategory.fuel: "Fuel",
    ExpenseCategory.electronics: "Electronics",
    ExpenseCategory.other: "Other",
}


class ActivityAction(str, Enum):
    create = "create"
    update = "update"
    delete = "delete"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class RecurringTemplate(Base, TimestampMixin):
    __tablename__ = "recurring_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[RecurringKind] = mapped_column(SAEnum(RecurringKind), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(120))
    default_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "default_amount_cents > 0", name="ck_template_default_amount_positive"
        ),
        Index("ix_templates_user_kind", "user_id", "kind"),
    )


class RecurringInstance(Base, TimestampMixin):
    __tablename__ = "recurring_instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    template_id: Mapped[int] = mapped_column(
        ForeignKey("recurring_templates.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[RecurringKind] = mapped_column(SAEnum(RecurringKind), nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # No unique (template_id, month, user_id): duplicates are resolved on read.
    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_instance_amount_positive"),
        Index("ix_instances_user_kind_month", "user_id", "kind", "month"),
        Index("ix_instances_template_user_month", "template_id", "user_id", "month"),
    )


class VariableExpense(Base, TimestampMixin):
    __tablename__ = "variable_expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    category: Mapped[ExpenseCategory] = mapped_column(
        SAEnum(ExpenseCategory), nullable=False, default=ExpenseCategory.other
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_expense_amount_positive"),
        Index("ix_expenses_user_date", "user_id", "date"),
    )


class OneTimeInvestment(Base, TimestampMixin):
    __tablename__ = "one_time_investments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "amount_cents > 0", name="ck_one_time_investment_amount_positive"
        ),
        Index("ix_one_time_investments_user_date", "user_id", "date"),
    )


class ActivityEntry(Base):
    __tablename__ = "activity_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[RecordKind] = mapped_column(SAEnum(RecordKind), nullable=False)
    action: Mapped[ActivityAction] = mapped_column(
        SAEnum(ActivityAction), nullable=False
    )
    record_id: Mapped[int] = mapped_column(Integer, nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False)
    snapshot_json: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (Index("ix_activity_user_created", "user_id", "created_at"),)
