import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from activity import ActivityLogService
from categories import resolve_category
from database import session_scope
from errors import LedgerValidationError, Unauthorized
from feed import ChangeEvent, ChangeFeed, ChangeType
from models import (
    ActivityAction,
    ExpenseCategory,
    OneTimeInvestment,
    RecordKind,
    VariableExpense,
)
from months import current_month, local_today, month_key, resolve_month
from schemas import (
    ExpenseIn,
    ExpenseIngestIn,
    ExpenseOut,
    OneTimeInvestmentOut,
)

logger = logging.getLogger(__name__)

OneTimeRecord = Union[VariableExpense, OneTimeInvestment]


@dataclass
class RecordFilters:
    category: Optional[ExpenseCategory] = None
    query: Optional[str] = None


class OneTimeRecordService:
    """Dated records without a template, scoped to one owner.

    Committed mutations are announced on the change feed and written to the
    activity log; both are optional collaborators.
    """

    model: type = VariableExpense
    out_schema: type[BaseModel] = ExpenseOut
    record_kind: RecordKind = RecordKind.expense
    fields: tuple[str, ...] = ("date", "amount_cents", "description")

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        owner_id: str,
        feed: Optional[ChangeFeed] = None,
        activity: Optional[ActivityLogService] = None,
    ) -> None:
        self.sessions = sessions
        self.owner_id = owner_id
        self.feed = feed
        self.activity = activity

    def _validate(self, values: dict[str, Any]) -> None:
        amount = values.get("amount_cents")
        if amount is not None and amount <= 0:
            raise LedgerValidationError("Amount must be positive")
        if "description" in values and values["description"] is not None:
            values["description"] = values["description"].strip()

    def _build(self, data: BaseModel) -> OneTimeRecord:
        values = {name: getattr(data, name) for name in self.fields}
        self._validate(values)
        return self.model(user_id=self.owner_id, **values)

    def snapshot(self, record: OneTimeRecord) -> BaseModel:
        return self.out_schema.model_validate(record)

    async def _announce(
        self,
        event_type: ChangeType,
        *,
        record: Optional[BaseModel] = None,
        old_record: Optional[BaseModel] = None,
    ) -> None:
        if self.feed is not None:
            self.feed.publish(
                ChangeEvent(
                    event_type=event_type,
                    kind=self.record_kind,
                    owner_id=self.owner_id,
                    record=record,
                    old_record=old_record,
                )
            )
        if self.activity is not None:
            if event_type == ChangeType.insert:
                await self.activity.record(
                    self.record_kind, ActivityAction.create, record
                )
            elif event_type == ChangeType.update:
                await self.activity.record(
                    self.record_kind, ActivityAction.update, record, before=old_record
                )
            else:
                await self.activity.record(
                    self.record_kind, ActivityAction.delete, old_record
                )

    async def _owned(
        self, session: AsyncSession, record_id: int
    ) -> Optional[OneTimeRecord]:
        record = await session.get(self.model, record_id)
        if not record:
            return None
        if record.user_id != self.owner_id:
            raise Unauthorized(f"{self.record_kind.value} belongs to another user")
        return record

    async def create(self, data: BaseModel) -> OneTimeRecord:
        record = self._build(data)
        async with session_scope(self.sessions) as session:
            session.add(record)
            await session.flush()
            await session.refresh(record)
        await self._announce(ChangeType.insert, record=self.snapshot(record))
        return record

    async def create_many(self, items: Iterable[BaseModel]) -> list[OneTimeRecord]:
        records = [self._build(item) for item in items]
        if not records:
            return []
        async with session_scope(self.sessions) as session:
            session.add_all(records)
            await session.flush()
            for record in records:
                await session.refresh(record)
        logger.info(
            f"records_batch_created: kind={self.record_kind.value} "
            f"user_id={self.owner_id} count={len(records)}"
        )
        for record in records:
            await self._announce(ChangeType.insert, record=self.snapshot(record))
        return records

    async def get(self, record_id: int) -> Optional[OneTimeRecord]:
        async with session_scope(self.sessions) as session:
            record = await session.get(self.model, record_id)
            if not record or record.user_id != self.owner_id:
                return None
            return record

    async def update(
        self, record_id: int, data: BaseModel
    ) -> Optional[OneTimeRecord]:
        values = {
            k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None
        }
        self._validate(values)
        async with session_scope(self.sessions) as session:
            record = await self._owned(session, record_id)
            if not record:
                return None
            before = self.snapshot(record)
            for name, value in values.items():
                if name in self.fields:
                    setattr(record, name, value)
            await session.flush()
            await session.refresh(record)
        after = self.snapshot(record)
        if month_key(before.date) != month_key(after.date):
            logger.info(
                f"record_moved: kind={self.record_kind.value} id={record_id} "
                f"from={month_key(before.date)} to={month_key(after.date)}"
            )
        await self._announce(ChangeType.update, record=after, old_record=before)
        return record

    async def delete(self, record_id: int) -> Optional[OneTimeRecord]:
        async with session_scope(self.sessions) as session:
            record = await self._owned(session, record_id)
            if not record:
                return None
            snapshot = self.snapshot(record)
            await session.delete(record)
        await self._announce(ChangeType.delete, old_record=snapshot)
        return record

    async def list_by_month(
        self, month: str, filters: Optional[RecordFilters] = None
    ) -> list[OneTimeRecord]:
        period = resolve_month(month)
        filters = filters or RecordFilters()
        stmt = (
            select(self.model)
            .where(
                self.model.user_id == self.owner_id,
                self.model.date.between(period.start, period.end),
            )
            .order_by(
                self.model.date.desc(),
                self.model.created_at.desc(),
                self.model.id.desc(),
            )
        )
        if filters.category and hasattr(self.model, "category"):
            stmt = stmt.where(self.model.category == filters.category)
        if filters.query:
            needle = (
                filters.query.lower()
                .replace("\\", "\\\\")
                .replace("%", "\\%")
                .replace("_", "\\_")
            )
            stmt = stmt.where(
                func.lower(self.model.description).like(f"%{needle}%", escape="\\")
            )
        async with session_scope(self.sessions) as session:
            return list((await session.scalars(stmt)).all())

    async def list_all(self) -> list[OneTimeRecord]:
        async with session_scope(self.sessions) as session:
            stmt = (
                select(self.model)
                .where(self.model.user_id == self.owner_id)
                .order_by(self.model.date.desc(), self.model.id.desc())
            )
            return list((await session.scalars(stmt)).all())


class ExpenseService(OneTimeRecordService):
    model = VariableExpense
    out_schema = ExpenseOut
    record_kind = RecordKind.expense
    fields = ("date", "amount_cents", "description", "category")

    async def ingest(self, data: ExpenseIngestIn) -> VariableExpense:
        category = resolve_category(data.category)
        return await self.create(
            ExpenseIn(
                amount_cents=data.amount_cents,
                description=data.description,
                category=category,
                date=data.date or local_today(),
            )
        )

    async def available_months(self, today: Optional[dt.date] = None) -> list[str]:
        async with session_scope(self.sessions) as session:
            dates = (
                await session.scalars(
                    select(VariableExpense.date)
                    .where(VariableExpense.user_id == self.owner_id)
                    .distinct()
                )
            ).all()
        months = {month_key(d) for d in dates}
        months.add(current_month(today))
        return sorted(months, reverse=True)


class OneTimeInvestmentService(OneTimeRecordService):
    model = OneTimeInvestment
    out_schema = OneTimeInvestmentOut
    record_kind = RecordKind.one_time_investment
    fields = ("date", "amount_cents", "description")

    def _validate(self, values: dict[str, Any]) -> None:
        super()._validate(values)
        if "description" in values and not values["description"]:
            raise LedgerValidationError("Description is required")
