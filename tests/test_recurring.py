import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from database import session_scope
from errors import LedgerValidationError, NotFound, Unauthorized
from models import RecurringInstance, RecurringKind
from recurring import KeyedLocks, RecurringService, SalaryService
from schemas import InstancePatch, TemplateIn, TemplatePatch


def fixed_costs(sessions, owner: str = "alice", locks=None) -> RecurringService:
    return RecurringService(sessions, RecurringKind.fixed_cost, owner, locks)


async def count_instances(sessions, template_id: int) -> int:
    async with session_scope(sessions) as session:
        return int(
            await session.scalar(
                select(func.count(RecurringInstance.id)).where(
                    RecurringInstance.template_id == template_id
                )
            )
        )


@pytest.mark.asyncio
async def test_first_instance_uses_template_default(sessions) -> None:
    service = fixed_costs(sessions)
    rent = await service.create_template(
        TemplateIn(name="Rent", default_amount_cents=100_000)
    )

    instance = await service.get_or_create_instance(rent.id, "2024-01")

    assert instance.amount_cents == 100_000
    assert instance.enabled is True
    assert instance.month == "2024-01"
    assert instance.kind == RecurringKind.fixed_cost


@pytest.mark.asyncio
async def test_roll_forward_copies_latest_earlier_month(sessions) -> None:
    service = fixed_costs(sessions)
    rent = await service.create_template(
        TemplateIn(name="Rent", default_amount_cents=100_000)
    )
    jan = await service.get_or_create_instance(rent.id, "2024-01")
    await service.update_instance(
        jan.id, InstancePatch(amount_cents=120_000, enabled=False)
    )

    # February was never touched; March inherits from January
    march = await service.get_or_create_instance(rent.id, "2024-03")

    assert march.amount_cents == 120_000
    assert march.enabled is False


@pytest.mark.asyncio
async def test_roll_forward_ignores_later_months(sessions) -> None:
    service = fixed_costs(sessions)
    gym = await service.create_template(TemplateIn(name="Gym", default_amount_cents=3_000))
    may = await service.get_or_create_instance(gym.id, "2024-05")
    await service.update_instance(may.id, InstancePatch(amount_cents=4_500))

    april = await service.get_or_create_instance(gym.id, "2024-04")

    assert april.amount_cents == 3_000


@pytest.mark.asyncio
async def test_existing_instance_is_returned_unchanged(sessions) -> None:
    service = fixed_costs(sessions)
    rent = await service.create_template(TemplateIn(name="Rent", default_amount_cents=1_000))
    first = await service.get_or_create_instance(rent.id, "2024-01")
    await service.update_template(rent.id, TemplatePatch(default_amount_cents=2_000))

    again = await service.get_or_create_instance(rent.id, "2024-01")

    assert again.id == first.id
    assert again.amount_cents == 1_000


@pytest.mark.asyncio
async def test_ensure_is_idempotent(sessions) -> None:
    service = fixed_costs(sessions)
    await service.create_template(TemplateIn(name="Rent", default_amount_cents=100_000))
    await service.create_template(TemplateIn(name="Internet", default_amount_cents=4_000))

    first = await service.ensure_instances_for_month("2024-02")
    second = await service.ensure_instances_for_month("2024-02")

    assert len(first.created) == 2
    assert second.created == []
    assert second.ok
    assert sorted(i.id for i in first.instances) == sorted(
        i.id for i in second.instances
    )


@pytest.mark.asyncio
async def test_ensure_does_not_backfill_earlier_months(sessions) -> None:
    service = fixed_costs(sessions)
    await service.create_template(TemplateIn(name="Rent", default_amount_cents=100_000))
    await service.ensure_instances_for_month("2024-03")

    gym = await service.create_template(TemplateIn(name="Gym", default_amount_cents=3_000))
    await service.ensure_instances_for_month("2024-04")

    march = await service.get_instances("2024-03")
    april = await service.get_instances("2024-04")
    assert gym.id not in {i.template_id for i in march}
    assert gym.id in {i.template_id for i in april}


@pytest.mark.asyncio
async def test_ensure_reports_failures_without_hiding_success(
    sessions, monkeypatch
) -> None:
    service = fixed_costs(sessions)
    rent = await service.create_template(TemplateIn(name="Rent", default_amount_cents=1_000))
    gym = await service.create_template(TemplateIn(name="Gym", default_amount_cents=3_000))

    original = service._get_or_create

    async def flaky(template_id, month):
        if template_id == rent.id:
            raise NotFound("Template vanished")
        return await original(template_id, month)

    monkeypatch.setattr(service, "_get_or_create", flaky)

    result = await service.ensure_instances_for_month("2024-06")

    assert not result.ok
    assert [f.template_id for f in result.failures] == [rent.id]
    assert isinstance(result.failures[0].error, NotFound)
    assert [i.template_id for i in result.created] == [gym.id]
    assert [i.template_id for i in result.instances] == [gym.id]


@pytest.mark.asyncio
async def test_duplicate_instances_resolve_to_latest_update(sessions) -> None:
    service = fixed_costs(sessions)
    rent = await service.create_template(TemplateIn(name="Rent", default_amount_cents=1_000))
    base = datetime(2024, 1, 5, 12, 0, 0)
    async with session_scope(sessions) as session:
        older = RecurringInstance(
            template_id=rent.id,
            user_id="alice",
            kind=RecurringKind.fixed_cost,
            month="2024-01",
            amount_cents=1_000,
            created_at=base + timedelta(minutes=5),
            updated_at=base + timedelta(minutes=5),
        )
        newer = RecurringInstance(
            template_id=rent.id,
            user_id="alice",
            kind=RecurringKind.fixed_cost,
            month="2024-01",
            amount_cents=1_300,
            created_at=base,
            updated_at=base + timedelta(hours=1),
        )
        session.add_all([older, newer])

    instances = await service.get_instances("2024-01")
    fetched = await service.get_or_create_instance(rent.id, "2024-01")

    assert len(instances) == 1
    assert instances[0].id == newer.id
    assert fetched.id == newer.id
    assert await count_instances(sessions, rent.id) == 2


@pytest.mark.asyncio
async def test_roll_forward_uses_dedup_winner_of_previous_month(sessions) -> None:
    service = fixed_costs(sessions)
    rent = await service.create_template(TemplateIn(name="Rent", default_amount_cents=1_000))
    stamp = datetime(2024, 1, 5, 12, 0, 0)
    async with session_scope(sessions) as session:
        session.add_all(
            [
                RecurringInstance(
                    template_id=rent.id,
                    user_id="alice",
                    kind=RecurringKind.fixed_cost,
                    month="2024-01",
                    amount_cents=amount,
                    created_at=created,
                    updated_at=stamp,
                )
                for amount, created in (
                    (1_100, stamp - timedelta(days=1)),
                    (1_250, stamp),
                )
            ]
        )

    february = await service.get_or_create_instance(rent.id, "2024-02")

    # equal updated_at, so the most recently created row wins
    assert february.amount_cents == 1_250


@pytest.mark.asyncio
async def test_concurrent_get_or_create_creates_one_row(sessions) -> None:
    locks = KeyedLocks()
    rent = await fixed_costs(sessions, locks=locks).create_template(
        TemplateIn(name="Rent", default_amount_cents=1_000)
    )
    services = [fixed_costs(sessions, locks=locks) for _ in range(5)]

    results = await asyncio.gather(
        *(s.get_or_create_instance(rent.id, "2024-07") for s in services)
    )

    assert len({r.id for r in results}) == 1
    assert await count_instances(sessions, rent.id) == 1
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_delete_template_cascades_instances(sessions) -> None:
    service = fixed_costs(sessions)
    rent = await service.create_template(TemplateIn(name="Rent", default_amount_cents=1_000))
    await service.ensure_instances_for_month("2024-01")
    await service.ensure_instances_for_month("2024-02")
    assert await count_instances(sessions, rent.id) == 2

    assert await service.delete_template(rent.id) is True

    assert await count_instances(sessions, rent.id) == 0
    assert await service.get_template(rent.id) is None
    assert await service.delete_template(rent.id) is False


@pytest.mark.asyncio
async def test_other_owner_is_unauthorized(sessions) -> None:
    alice = fixed_costs(sessions, "alice")
    bob = fixed_costs(sessions, "bob")
    rent = await alice.create_template(TemplateIn(name="Rent", default_amount_cents=1_000))
    instance = await alice.get_or_create_instance(rent.id, "2024-01")

    assert await bob.get_template(rent.id) is None
    assert await bob.list_templates() == []
    with pytest.raises(Unauthorized):
        await bob.get_or_create_instance(rent.id, "2024-01")
    with pytest.raises(Unauthorized):
        await bob.update_template(rent.id, TemplatePatch(name="Mine now"))
    with pytest.raises(Unauthorized):
        await bob.delete_template(rent.id)
    with pytest.raises(Unauthorized):
        await bob.update_instance(instance.id, InstancePatch(amount_cents=1))


@pytest.mark.asyncio
async def test_missing_template_raises_not_found(sessions) -> None:
    with pytest.raises(NotFound):
        await fixed_costs(sessions).get_or_create_instance(999, "2024-01")


@pytest.mark.asyncio
async def test_template_of_another_kind_is_not_found(sessions) -> None:
    rent = await fixed_costs(sessions).create_template(
        TemplateIn(name="Rent", default_amount_cents=1_000)
    )
    investments = RecurringService(sessions, RecurringKind.investment, "alice")

    with pytest.raises(NotFound):
        await investments.get_or_create_instance(rent.id, "2024-01")
    assert await investments.update_template(rent.id, TemplatePatch(name="x")) is None


@pytest.mark.asyncio
async def test_template_validation(sessions) -> None:
    service = fixed_costs(sessions)
    with pytest.raises(LedgerValidationError):
        await service.create_template(TemplateIn(name="   ", default_amount_cents=1_000))
    with pytest.raises(LedgerValidationError):
        await service.create_template(TemplateIn(default_amount_cents=1_000))

    rent = await service.create_template(
        TemplateIn(name="  Rent ", default_amount_cents=1_000)
    )
    assert rent.name == "Rent"
    with pytest.raises(LedgerValidationError):
        await service.update_template(rent.id, TemplatePatch(name=""))
    with pytest.raises(LedgerValidationError):
        await service.get_or_create_instance(rent.id, "2024-13")


@pytest.mark.asyncio
async def test_update_template_and_missing_ids(sessions) -> None:
    service = fixed_costs(sessions)
    rent = await service.create_template(TemplateIn(name="Rent", default_amount_cents=1_000))

    updated = await service.update_template(
        rent.id, TemplatePatch(name="Flat", default_amount_cents=1_500)
    )

    assert updated.name == "Flat"
    assert updated.default_amount_cents == 1_500
    assert await service.update_template(999, TemplatePatch(name="x")) is None
    assert await service.update_instance(999, InstancePatch(amount_cents=1)) is None


@pytest.mark.asyncio
async def test_enabled_flag_is_fixed_cost_only(sessions) -> None:
    investments = RecurringService(sessions, RecurringKind.investment, "alice")
    etf = await investments.create_template(
        TemplateIn(name="ETF", default_amount_cents=20_000)
    )
    instance = await investments.get_or_create_instance(etf.id, "2024-01")

    with pytest.raises(LedgerValidationError):
        await investments.update_instance(instance.id, InstancePatch(enabled=False))

    updated = await investments.update_instance(instance.id, InstancePatch(amount_cents=0))
    assert updated.amount_cents == 0


@pytest.mark.asyncio
async def test_salary_has_a_single_template(sessions) -> None:
    salary = SalaryService(sessions, "alice")
    with pytest.raises(LedgerValidationError):
        await salary.create_template(TemplateIn(name="Job", default_amount_cents=1))

    await asyncio.gather(
        salary.create_or_update_template(300_000),
        salary.create_or_update_template(300_000),
    )
    template = await salary.create_or_update_template(320_000)

    templates = await salary.list_templates()
    assert [t.id for t in templates] == [template.id]
    assert template.default_amount_cents == 320_000
    assert template.name is None
    assert (await salary.get_template()).id == template.id


@pytest.mark.asyncio
async def test_salary_instance_rolls_forward(sessions) -> None:
    salary = SalaryService(sessions, "alice")
    template = await salary.create_or_update_template(300_000)
    january = await salary.get_or_create_instance(template.id, "2024-01")
    await salary.update_instance(january.id, InstancePatch(amount_cents=310_000))

    assert await salary.get_instance("2024-02") is None
    await salary.ensure_instances_for_month("2024-02")

    february = await salary.get_instance("2024-02")
    assert february.amount_cents == 310_000
