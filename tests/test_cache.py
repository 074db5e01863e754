from datetime import date

import pytest

from cache import CacheKey, CacheKind, LedgerCache
from client import LedgerClient
from errors import TransientStoreError
from models import ExpenseCategory, RecordKind, RecurringKind
from recurring import RecurringService
from schemas import ExpenseIn, ExpensePatch, InstancePatch, TemplateIn


def key(kind: CacheKind, month: str) -> CacheKey:
    return CacheKey(kind, month)


def test_get_hits_until_ttl_then_misses(clock) -> None:
    cache = LedgerCache(ttl=300, clock=clock)
    cache.set(key(CacheKind.stats, "2024-03"), "payload")

    assert cache.get(key(CacheKind.stats, "2024-03")) == "payload"
    clock.advance(299.9)
    assert cache.get(key(CacheKind.stats, "2024-03")) == "payload"
    clock.advance(0.1)
    assert cache.get(key(CacheKind.stats, "2024-03")) is None
    assert cache.peek(key(CacheKind.stats, "2024-03")) == "payload"


def test_sweep_evicts_expired_entries(clock) -> None:
    cache = LedgerCache(ttl=10, clock=clock)
    cache.set(key(CacheKind.expenses, "2024-01"), [])
    clock.advance(5)
    cache.set(key(CacheKind.expenses, "2024-02"), [])
    clock.advance(6)

    assert cache.sweep() == 1
    assert key(CacheKind.expenses, "2024-01") not in cache
    assert key(CacheKind.expenses, "2024-02") in cache


def test_invalidate_expenses_also_drops_stats_of_previous_month(clock) -> None:
    cache = LedgerCache(ttl=300, clock=clock)
    for kind, month in [
        (CacheKind.expenses, "2024-03"),
        (CacheKind.stats, "2024-03"),
        (CacheKind.stats, "2024-02"),
        (CacheKind.stats, "2024-04"),
        (CacheKind.fixed_costs, "2024-03"),
    ]:
        cache.set(key(kind, month), object())

    cache.invalidate(CacheKind.expenses, "2024-03")

    assert key(CacheKind.expenses, "2024-03") not in cache
    assert key(CacheKind.stats, "2024-03") not in cache
    assert key(CacheKind.stats, "2024-02") not in cache
    assert key(CacheKind.stats, "2024-04") in cache
    assert key(CacheKind.fixed_costs, "2024-03") in cache


def test_invalidate_recurring_kind_keeps_previous_month_stats(clock) -> None:
    cache = LedgerCache(ttl=300, clock=clock)
    cache.set(key(CacheKind.fixed_costs, "2024-01"), [])
    cache.set(key(CacheKind.stats, "2024-01"), {})
    cache.set(key(CacheKind.stats, "2023-12"), {})

    cache.invalidate(CacheKind.fixed_costs, "2024-01")

    assert key(CacheKind.fixed_costs, "2024-01") not in cache
    assert key(CacheKind.stats, "2024-01") not in cache
    assert key(CacheKind.stats, "2023-12") in cache


def test_superseded_writes_are_dropped(clock) -> None:
    cache = LedgerCache(ttl=300, clock=clock)
    k = key(CacheKind.stats, "2024-05")
    clock.now = 10
    assert cache.set(k, "fresh")
    assert not cache.set(k, "older load", as_of=5)
    assert cache.get(k) == "fresh"

    clock.now = 20
    cache.invalidate_key(k)
    assert not cache.set(k, "started before invalidation", as_of=15)
    assert cache.get(k) is None
    assert cache.set(k, "reloaded", as_of=20)
    assert cache.get(k) == "reloaded"


def test_invalidate_month_and_clear(clock) -> None:
    cache = LedgerCache(ttl=300, clock=clock)
    for kind in CacheKind:
        cache.set(key(kind, "2024-06"), kind.value)
    cache.set(key(CacheKind.stats, "2024-07"), "keep")

    cache.invalidate_month("2024-06")
    assert len(cache) == 1

    cache.clear()
    assert len(cache) == 0


def test_cache_kind_mapping() -> None:
    assert CacheKind.for_recurring(RecurringKind.fixed_cost) == CacheKind.fixed_costs
    assert CacheKind.for_recurring(RecurringKind.salary) == CacheKind.salary
    assert CacheKind.for_record(RecordKind.one_time_investment) == (
        CacheKind.one_time_investments
    )


@pytest.mark.asyncio
async def test_client_serves_cached_stats_until_invalidated(sessions, clock) -> None:
    client = LedgerClient(sessions, "alice", ttl=300, clock=clock)
    first = await client.monthly_stats("2024-03")
    assert first.variable_expenses_total == 0

    # a write that bypasses the client is not seen until the entry expires
    await client.expense_service.create(
        ExpenseIn(date=date(2024, 3, 2), amount_cents=700, category=ExpenseCategory.food)
    )
    assert (await client.monthly_stats("2024-03")).variable_expenses_total == 0

    await client.add_expense(ExpenseIn(date=date(2024, 3, 4), amount_cents=300))
    assert (await client.monthly_stats("2024-03")).variable_expenses_total == 1_000


@pytest.mark.asyncio
async def test_moving_a_record_invalidates_both_months(sessions, clock) -> None:
    client = LedgerClient(sessions, "alice", ttl=300, clock=clock)
    record = await client.add_expense(ExpenseIn(date=date(2024, 1, 15), amount_cents=500))
    assert len(await client.expenses("2024-01")) == 1
    assert await client.expenses("2024-02") == []
    await client.monthly_stats("2024-01")
    await client.monthly_stats("2024-02")

    await client.update_expense(record.id, ExpensePatch(date=date(2024, 2, 15)))

    for kind in (CacheKind.expenses, CacheKind.stats):
        assert key(kind, "2024-01") not in client.cache
        assert key(kind, "2024-02") not in client.cache
    assert await client.expenses("2024-01") == []
    assert [e.id for e in await client.expenses("2024-02")] == [record.id]


@pytest.mark.asyncio
async def test_template_change_invalidates_supplied_month_and_runs_hooks(
    sessions, clock
) -> None:
    client = LedgerClient(sessions, "alice", ttl=300, clock=clock)
    seen = []

    async def refresh(kind, month):
        seen.append((kind, month))

    client.on_template_change(refresh)
    remove = client.on_template_change(lambda kind, month: seen.append("sync"))
    await client.monthly_stats("2024-01")
    await client.monthly_stats("2024-02")

    template = await client.create_template(
        RecurringKind.fixed_cost,
        TemplateIn(name="Rent", default_amount_cents=1_000),
        month="2024-02",
    )

    assert key(CacheKind.stats, "2024-02") not in client.cache
    assert key(CacheKind.stats, "2024-01") in client.cache
    assert seen == [(RecurringKind.fixed_cost, "2024-02"), "sync"]

    remove()
    await client.delete_template(RecurringKind.fixed_cost, template.id)
    assert seen[-1] == (RecurringKind.fixed_cost, None)
    assert key(CacheKind.stats, "2024-01") in client.cache


@pytest.mark.asyncio
async def test_instance_update_invalidates_kind_and_stats(sessions, clock) -> None:
    client = LedgerClient(sessions, "alice", ttl=300, clock=clock)
    await client.create_template(
        RecurringKind.fixed_cost, TemplateIn(name="Rent", default_amount_cents=1_000)
    )
    instances = await client.fixed_cost_instances("2024-04")
    stats = await client.monthly_stats("2024-04")
    assert stats.fixed_costs_total == 1_000

    updated = await client.update_instance(
        RecurringKind.fixed_cost, instances[0].id, InstancePatch(amount_cents=1_400)
    )

    assert updated.amount_cents == 1_400
    assert key(CacheKind.fixed_costs, "2024-04") not in client.cache
    assert (await client.monthly_stats("2024-04")).fixed_costs_total == 1_400


@pytest.mark.asyncio
async def test_stale_entry_served_when_store_unavailable(
    sessions, clock, monkeypatch
) -> None:
    client = LedgerClient(sessions, "alice", ttl=60, clock=clock)
    cached = await client.monthly_stats("2024-03")
    clock.advance(120)

    async def unavailable(month):
        raise TransientStoreError("database is locked")

    monkeypatch.setattr(client.stats_service, "compute", unavailable)

    assert await client.monthly_stats("2024-03") == cached
    with pytest.raises(TransientStoreError):
        await client.monthly_stats("2024-04")


@pytest.mark.asyncio
async def test_close_clears_cache_and_hooks(sessions, clock) -> None:
    client = LedgerClient(sessions, "alice", ttl=60, clock=clock)
    await client.monthly_stats("2024-03")
    client.on_template_change(lambda kind, month: None)

    client.close()

    assert len(client.cache) == 0
    assert client._template_hooks == []
    assert client.closed


@pytest.mark.asyncio
async def test_failed_ensure_is_not_cached_as_fresh_stats(
    sessions, clock, monkeypatch
) -> None:
    client = LedgerClient(sessions, "alice", ttl=300, clock=clock)
    await client.set_salary(500_000)
    original = RecurringService.ensure_instances_for_month

    async def salary_unavailable(self, month):
        if self.kind == RecurringKind.salary:
            raise TransientStoreError("database is locked")
        return await original(self, month)

    monkeypatch.setattr(RecurringService, "ensure_instances_for_month", salary_unavailable)
    with pytest.raises(TransientStoreError):
        await client.monthly_stats("2024-02")
    assert key(CacheKind.stats, "2024-02") not in client.cache

    monkeypatch.setattr(RecurringService, "ensure_instances_for_month", original)
    assert (await client.monthly_stats("2024-02")).income == 500_000
