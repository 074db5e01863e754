import asyncio
import datetime as dt
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from activity import ActivityLogService
from cache import CacheKey, CacheKind, LedgerCache
from config import get_settings
from errors import TransientStoreError
from feed import ChangeEvent, ChangeFeed, Subscription
from models import ActivityEntry, RecordKind, RecurringKind
from months import month_key, parse_month, previous_month
from reconcile import Debouncer, MonthReconciler
from records import ExpenseService, OneTimeInvestmentService, RecordFilters
from recurring import KeyedLocks, RecurringService, SalaryService
from schemas import (
    ExpenseIn,
    ExpenseIngestIn,
    ExpenseOut,
    ExpensePatch,
    InstanceOut,
    InstancePatch,
    MonthlyOverview,
    MonthlyStats,
    OneTimeInvestmentIn,
    OneTimeInvestmentOut,
    OneTimeInvestmentPatch,
    TemplateIn,
    TemplateOut,
    TemplatePatch,
)
from stats import MonthlyStatsService

logger = logging.getLogger(__name__)

_MISSING = object()

TemplateHook = Callable[[RecurringKind, Optional[str]], Union[None, Awaitable[None]]]


class LedgerClient:
    """Per-owner entry point for every read and write.

    Reads are served from the client's own ``LedgerCache``; writes go to the
    services and then invalidate exactly the cache entries they affect.
    """

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        owner_id: Optional[str],
        *,
        feed: Optional[ChangeFeed] = None,
        locks: Optional[KeyedLocks] = None,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = get_settings()
        self.sessions = sessions
        self.owner_id = owner_id
        self.feed = feed
        self.locks = locks if locks is not None else KeyedLocks()
        self.cache = LedgerCache(
            ttl if ttl is not None else settings.cache_ttl_secs, clock
        )
        self.activity = ActivityLogService(sessions, owner_id) if owner_id else None
        self.expense_service = ExpenseService(sessions, owner_id, feed, self.activity)
        self.one_time_service = OneTimeInvestmentService(
            sessions, owner_id, feed, self.activity
        )
        self.recurring = {
            RecurringKind.fixed_cost: RecurringService(
                sessions, RecurringKind.fixed_cost, owner_id, self.locks
            ),
            RecurringKind.investment: RecurringService(
                sessions, RecurringKind.investment, owner_id, self.locks
            ),
            RecurringKind.salary: SalaryService(sessions, owner_id, self.locks),
        }
        self.stats_service = MonthlyStatsService(sessions, owner_id, self.locks)
        self._template_hooks: list[TemplateHook] = []
        self.closed = False

    @property
    def salary(self) -> SalaryService:
        return self.recurring[RecurringKind.salary]

    @property
    def idle(self) -> bool:
        return len(self.cache) == 0 and not self._template_hooks

    async def _cached(self, key: CacheKey, loader: Callable[[], Awaitable[Any]]) -> Any:
        hit = self.cache.get(key, _MISSING)
        if hit is not _MISSING:
            return hit
        started = self.cache.now()
        try:
            payload = await loader()
        except TransientStoreError as exc:
            stale = self.cache.peek(key, _MISSING)
            if stale is _MISSING:
                raise
            logger.warning(
                f"cache_serving_stale: user_id={self.owner_id} "
                f"key={key.kind.value}/{key.month} error={exc}"
            )
            return stale
        self.cache.set(key, payload, as_of=started)
        return payload

    # reads

    async def monthly_stats(self, month: str) -> MonthlyStats:
        month = parse_month(month)
        return await self._cached(
            CacheKey(CacheKind.stats, month),
            lambda: self.stats_service.compute(month),
        )

    async def monthly_overview(self, month: str) -> MonthlyOverview:
        month = parse_month(month)
        current = await self.monthly_stats(month)
        previous = await self.monthly_stats(previous_month(month))
        return MonthlyOverview(current=current, previous=previous)

    async def expenses(
        self, month: str, filters: Optional[RecordFilters] = None
    ) -> list[ExpenseOut]:
        month = parse_month(month)

        async def load() -> list[ExpenseOut]:
            rows = await self.expense_service.list_by_month(month, filters)
            return [ExpenseOut.model_validate(r) for r in rows]

        if filters and (filters.category or filters.query):
            return await load()
        return await self._cached(CacheKey(CacheKind.expenses, month), load)

    async def one_time_investments(self, month: str) -> list[OneTimeInvestmentOut]:
        month = parse_month(month)

        async def load() -> list[OneTimeInvestmentOut]:
            rows = await self.one_time_service.list_by_month(month)
            return [OneTimeInvestmentOut.model_validate(r) for r in rows]

        return await self._cached(CacheKey(CacheKind.one_time_investments, month), load)

    async def _instances(self, kind: RecurringKind, month: str) -> list[InstanceOut]:
        month = parse_month(month)

        async def load() -> list[InstanceOut]:
            result = await self.recurring[kind].ensure_instances_for_month(month)
            return [InstanceOut.model_validate(i) for i in result.instances]

        return await self._cached(CacheKey(CacheKind.for_recurring(kind), month), load)

    async def fixed_cost_instances(self, month: str) -> list[InstanceOut]:
        return await self._instances(RecurringKind.fixed_cost, month)

    async def investment_instances(self, month: str) -> list[InstanceOut]:
        return await self._instances(RecurringKind.investment, month)

    async def salary_instance(self, month: str) -> Optional[InstanceOut]:
        instances = await self._instances(RecurringKind.salary, month)
        return instances[0] if instances else None

    async def templates(self, kind: RecurringKind) -> list[TemplateOut]:
        rows = await self.recurring[kind].list_templates()
        return [TemplateOut.model_validate(t) for t in rows]

    async def salary_template(self) -> Optional[TemplateOut]:
        template = await self.salary.get_template()
        return TemplateOut.model_validate(template) if template else None

    async def available_months(self, today: Optional[dt.date] = None) -> list[str]:
        return await self.expense_service.available_months(today)

    async def all_expenses(self) -> list[ExpenseOut]:
        return [
            ExpenseOut.model_validate(r) for r in await self.expense_service.list_all()
        ]

    async def all_one_time_investments(self) -> list[OneTimeInvestmentOut]:
        rows = await self.one_time_service.list_all()
        return [OneTimeInvestmentOut.model_validate(r) for r in rows]

    async def recent_activity(self, limit: int = 50) -> list[ActivityEntry]:
        if self.activity is None:
            return []
        return await self.activity.recent(limit)

    # one-time record mutations

    def _invalidate_record(self, kind: RecordKind, *dates: Any) -> None:
        for month in {month_key(d) for d in dates if d is not None}:
            self.cache.invalidate(CacheKind.for_record(kind), month)

    async def add_expense(self, data: ExpenseIn) -> ExpenseOut:
        record = await self.expense_service.create(data)
        self._invalidate_record(RecordKind.expense, record.date)
        return ExpenseOut.model_validate(record)

    async def ingest_expense(self, data: ExpenseIngestIn) -> ExpenseOut:
        record = await self.expense_service.ingest(data)
        self._invalidate_record(RecordKind.expense, record.date)
        return ExpenseOut.model_validate(record)

    async def import_expenses(self, items: Iterable[ExpenseIn]) -> list[ExpenseOut]:
        records = await self.expense_service.create_many(items)
        self._invalidate_record(RecordKind.expense, *(r.date for r in records))
        return [ExpenseOut.model_validate(r) for r in records]

    async def update_expense(
        self, expense_id: int, data: ExpensePatch
    ) -> Optional[ExpenseOut]:
        existing = await self.expense_service.get(expense_id)
        record = await self.expense_service.update(expense_id, data)
        if record is None:
            return None
        self._invalidate_record(
            RecordKind.expense, record.date, existing.date if existing else None
        )
        return ExpenseOut.model_validate(record)

    async def delete_expense(self, expense_id: int) -> Optional[ExpenseOut]:
        record = await self.expense_service.delete(expense_id)
        if record is None:
            return None
        self._invalidate_record(RecordKind.expense, record.date)
        return ExpenseOut.model_validate(record)

    async def add_one_time_investment(
        self, data: OneTimeInvestmentIn
    ) -> OneTimeInvestmentOut:
        record = await self.one_time_service.create(data)
        self._invalidate_record(RecordKind.one_time_investment, record.date)
        return OneTimeInvestmentOut.model_validate(record)

    async def update_one_time_investment(
        self, investment_id: int, data: OneTimeInvestmentPatch
    ) -> Optional[OneTimeInvestmentOut]:
        existing = await self.one_time_service.get(investment_id)
        record = await self.one_time_service.update(investment_id, data)
        if record is None:
            return None
        self._invalidate_record(
            RecordKind.one_time_investment,
            record.date,
            existing.date if existing else None,
        )
        return OneTimeInvestmentOut.model_validate(record)

    async def delete_one_time_investment(
        self, investment_id: int
    ) -> Optional[OneTimeInvestmentOut]:
        record = await self.one_time_service.delete(investment_id)
        if record is None:
            return None
        self._invalidate_record(RecordKind.one_time_investment, record.date)
        return OneTimeInvestmentOut.model_validate(record)

    # recurring mutations

    def on_template_change(self, hook: TemplateHook) -> Callable[[], None]:
        self._template_hooks.append(hook)

        def remove() -> None:
            if hook in self._template_hooks:
                self._template_hooks.remove(hook)

        return remove

    async def _template_changed(self, kind: RecurringKind, month: Optional[str]) -> None:
        if month:
            self.cache.invalidate(CacheKind.for_recurring(kind), parse_month(month))
        for hook in list(self._template_hooks):
            result = hook(kind, month)
            if inspect.isawaitable(result):
                await result

    async def create_template(
        self, kind: RecurringKind, data: TemplateIn, month: Optional[str] = None
    ) -> TemplateOut:
        template = await self.recurring[kind].create_template(data)
        await self._template_changed(kind, month)
        return TemplateOut.model_validate(template)

    async def set_salary(
        self, default_amount_cents: int, month: Optional[str] = None
    ) -> TemplateOut:
        template = await self.salary.create_or_update_template(default_amount_cents)
        await self._template_changed(RecurringKind.salary, month)
        return TemplateOut.model_validate(template)

    async def update_template(
        self,
        kind: RecurringKind,
        template_id: int,
        data: TemplatePatch,
        month: Optional[str] = None,
    ) -> Optional[TemplateOut]:
        template = await self.recurring[kind].update_template(template_id, data)
        if template is None:
            return None
        await self._template_changed(kind, month)
        return TemplateOut.model_validate(template)

    async def delete_template(
        self, kind: RecurringKind, template_id: int, month: Optional[str] = None
    ) -> bool:
        deleted = await self.recurring[kind].delete_template(template_id)
        if deleted:
            await self._template_changed(kind, month)
        return deleted

    async def update_instance(
        self, kind: RecurringKind, instance_id: int, data: InstancePatch
    ) -> Optional[InstanceOut]:
        instance = await self.recurring[kind].update_instance(instance_id, data)
        if instance is None:
            return None
        self.cache.invalidate(CacheKind.for_recurring(kind), instance.month)
        return InstanceOut.model_validate(instance)

    def subscribe(self) -> Optional[Subscription]:
        if self.feed is None or not self.owner_id:
            return None
        return self.feed.subscribe(self.owner_id)

    def close(self) -> None:
        self.cache.clear()
        self._template_hooks.clear()
        self.closed = True


class MonthView:
    """One month's expense list and summary, kept live from the change feed."""

    def __init__(
        self,
        client: LedgerClient,
        month: str,
        *,
        summary_active: bool = True,
        debounce: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        autorun: bool = True,
    ) -> None:
        self.client = client
        self.month = parse_month(month)
        self.summary_active = summary_active
        delay = (
            debounce if debounce is not None else get_settings().stats_debounce_secs
        )
        self.debouncer = Debouncer(self.recompute, delay, clock=clock, autorun=autorun)
        self.reconciler = MonthReconciler(
            self.month, [], RecordKind.expense, on_change=self.debouncer.trigger
        )
        self.stats: Optional[MonthlyStats] = None
        self.previous_stats: Optional[MonthlyStats] = None
        self._subscription: Optional[Subscription] = None
        self._consumer: Optional[asyncio.Task] = None

    @property
    def records(self) -> list[BaseModel]:
        return self.reconciler.records

    async def load(self) -> None:
        self.reconciler.reset(await self.client.expenses(self.month))
        if self.summary_active:
            overview = await self.client.monthly_overview(self.month)
            self.stats = overview.current
            self.previous_stats = overview.previous

    def start(self) -> None:
        self._subscription = self.client.subscribe()
        if self._subscription is not None:
            self._consumer = asyncio.get_running_loop().create_task(self._consume())

    async def _consume(self) -> None:
        async for event in self._subscription:
            self.handle(event)

    def handle(self, event: ChangeEvent) -> None:
        if event.owner_id != self.client.owner_id:
            return
        cache_kind = CacheKind.for_record(event.kind)
        for record in (event.record, event.old_record):
            if record is not None:
                self.client.cache.invalidate_key(
                    CacheKey(cache_kind, month_key(record.date))
                )
        if not self.reconciler.apply(event):
            self.debouncer.trigger()

    async def add_expense(self, data: ExpenseIn) -> ExpenseOut:
        record = await self.client.add_expense(data)
        self.reconciler.add_local(record)
        return record

    async def recompute(self) -> None:
        if not self.summary_active:
            return
        previous = previous_month(self.month)
        self.client.cache.invalidate_key(CacheKey(CacheKind.stats, self.month))
        self.client.cache.invalidate_key(CacheKey(CacheKind.stats, previous))
        overview = await self.client.monthly_overview(self.month)
        self.stats = overview.current
        self.previous_stats = overview.previous
        logger.info(
            f"stats_recomputed: user_id={self.client.owner_id} month={self.month}"
        )

    async def close(self) -> None:
        self.debouncer.cancel()
        if self._subscription is not None:
            self._subscription.close()
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
        self._subscription = None
        self._consumer = None


class ClientRegistry:
    """Process-wide set of clients, one per owner, sharing a feed and locks."""

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        *,
        feed: Optional[ChangeFeed] = None,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sessions = sessions
        self.feed = feed if feed is not None else ChangeFeed()
        self.locks = KeyedLocks()
        self.ttl = ttl
        self.clock = clock
        self._clients: dict[str, LedgerClient] = {}

    def get(self, owner_id: Optional[str]) -> LedgerClient:
        if not owner_id:
            return LedgerClient(
                self.sessions, None, feed=None, locks=self.locks, ttl=self.ttl
            )
        client = self._clients.get(owner_id)
        if client is None:
            client = LedgerClient(
                self.sessions,
                owner_id,
                feed=self.feed,
                locks=self.locks,
                ttl=self.ttl,
                clock=self.clock,
            )
            self._clients[owner_id] = client
        return client

    def release(self, owner_id: Optional[str]) -> bool:
        client = self._clients.pop(owner_id, None) if owner_id else None
        if client is None:
            return False
        client.close()
        logger.info(f"client_released: user_id={owner_id}")
        return True

    def sweep(self) -> int:
        """Evict expired cache entries, then drop clients left with nothing held."""
        removed = 0
        for owner_id, client in list(self._clients.items()):
            removed += client.cache.sweep()
            if client.idle:
                del self._clients[owner_id]
                client.close()
        return removed

    def close(self) -> None:
        for client in self._clients.values():
            client.close()
        self._clients.clear()

    def __len__(self) -> int:
        return len(self._clients)
