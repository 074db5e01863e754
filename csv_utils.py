import csv
import re
from io import StringIO
from typing import Sequence

from models import CATEGORY_LABELS
from schemas import ExpenseOut, OneTimeInvestmentOut


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
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def format_cents(cents: int) -> str:
    return f"{cents / 100:.2f}"


def export_expenses(expenses: Sequence[ExpenseOut]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["Date", "Amount", "Category", "Description"])
    for expense in expenses:
        writer.writerow(
            [
                expense.date.isoformat(),
                format_cents(expense.amount_cents),
                CATEGORY_LABELS.get(expense.category, expense.category.value),
                sanitize_csv_value(expense.description or ""),
            ]
        )
    return output.getvalue()


def export_one_time_investments(investments: Sequence[OneTimeInvestmentOut]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(["Date", "Amount", "Description"])
    for investment in investments:
        writer.writerow(
            [
                investment.date.isoformat(),
                format_cents(investment.amount_cents),
                sanitize_csv_value(investment.description or ""),
            ]
        )
    return output.getvalue()
