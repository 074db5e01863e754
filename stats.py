import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from errors import NotFound, TransientStoreError
from models import ExpenseCategory, RecurringKind
from months import parse_month, previous_month
from records import ExpenseService, OneTimeInvestmentService
from recurring import KeyedLocks, RecurringService, SalaryService
from schemas import MonthlyOverview, MonthlyStats

logger = logging.getLogger(__name__)


class MonthlyStatsService:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        owner_id: Optional[str],
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self.sessions = sessions
        self.owner_id = owner_id
        self.locks = locks if locks is not None else KeyedLocks()

    def _recurring(self) -> tuple[RecurringService, RecurringService, SalaryService]:
        return (
            RecurringService(
                self.sessions, RecurringKind.fixed_cost, self.owner_id, self.locks
            ),
            RecurringService(
                self.sessions, RecurringKind.investment, self.owner_id, self.locks
            ),
            SalaryService(self.sessions, self.owner_id, self.locks),
        )

    async def compute(self, month: str) -> MonthlyStats:
        month = parse_month(month)
        if not self.owner_id:
            return MonthlyStats.empty(month)

        fixed, investments, salary = self._recurring()
        for service in (fixed, investments, salary):
            try:
                result = await service.ensure_instances_for_month(month)
            except NotFound as exc:
                logger.warning(
                    f"stats_ensure_failed: kind={service.kind.value} month={month} "
                    f"error={exc}"
                )
                continue
            for failure in result.failures:
                # totals missing a kind must not be cached as fresh
                if isinstance(failure.error, TransientStoreError):
                    raise failure.error
                logger.warning(
                    f"stats_ensure_partial: kind={service.kind.value} month={month} "
                    f"template_id={failure.template_id} error={failure.error}"
                )

        expenses = ExpenseService(self.sessions, self.owner_id)
        one_time = OneTimeInvestmentService(self.sessions, self.owner_id)
        (
            expense_rows,
            fixed_rows,
            salary_instance,
            investment_rows,
            one_time_rows,
        ) = await asyncio.gather(
            expenses.list_by_month(month),
            fixed.get_instances(month),
            salary.get_instance(month),
            investments.get_instances(month),
            one_time.list_by_month(month),
        )

        stats = MonthlyStats.empty(month)
        for expense in expense_rows:
            category = expense.category or ExpenseCategory.other
            stats.by_category[category] += expense.amount_cents
        stats.variable_expenses_total = sum(e.amount_cents for e in expense_rows)
        stats.count = len(expense_rows)
        stats.fixed_costs_total = sum(i.amount_cents for i in fixed_rows if i.enabled)
        stats.income = salary_instance.amount_cents if salary_instance else 0
        stats.investments_total = sum(i.amount_cents for i in investment_rows) + sum(
            r.amount_cents for r in one_time_rows
        )
        stats.savings = (
            stats.income
            - stats.variable_expenses_total
            - stats.fixed_costs_total
            - stats.investments_total
        )
        logger.info(
            f"stats_computed: user_id={self.owner_id} month={month} "
            f"income={stats.income} savings={stats.savings} count={stats.count}"
        )
        return stats

    async def compute_with_previous(self, month: str) -> MonthlyOverview:
        month = parse_month(month)
        current = await self.compute(month)
        previous = await self.compute(previous_month(month))
        return MonthlyOverview(current=current, previous=previous)
