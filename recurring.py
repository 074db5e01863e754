import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Hashable, Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import session_scope
from errors import LedgerValidationError, NotFound, TransientStoreError, Unauthorized
from models import RecurringInstance, RecurringKind, RecurringTemplate
from months import parse_month
from schemas import InstancePatch, TemplateIn, TemplatePatch

logger = logging.getLogger(__name__)


class KeyedLocks:
    """asyncio locks handed out per key and dropped once nobody holds them."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, list] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


@dataclass(frozen=True)
class EnsureFailure:
    template_id: int
    error: Exception


@dataclass
class EnsureResult:
    month: str
    instances: list[RecurringInstance] = field(default_factory=list)
    created: list[RecurringInstance] = field(default_factory=list)
    failures: list[EnsureFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


def _dedup_sort_key(instance: RecurringInstance) -> tuple:
    return (instance.updated_at, instance.created_at, instance.id)


def pick_instance(rows: Iterable[RecurringInstance]) -> Optional[RecurringInstance]:
    """Most recently updated row wins; ties go to the newest created, then id."""
    rows = list(rows)
    if not rows:
        return None
    winner = max(rows, key=_dedup_sort_key)
    if len(rows) > 1:
        losers = sorted(r.id for r in rows if r.id != winner.id)
        logger.warning(
            f"duplicate_instances: template_id={winner.template_id} "
            f"month={winner.month} user_id={winner.user_id} "
            f"kept={winner.id} ignored={losers}"
        )
    return winner


def _check_amount(value: Optional[int], *, allow_zero: bool = False) -> None:
    if value is None:
        return
    if value < 0 or (value == 0 and not allow_zero):
        raise LedgerValidationError("Amount must be positive")


class RecurringService:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        kind: RecurringKind,
        owner_id: str,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self.sessions = sessions
        self.kind = kind
        self.owner_id = owner_id
        self.locks = locks if locks is not None else KeyedLocks()

    def _instance_key(self, template_id: int, month: str) -> tuple:
        return (self.kind, template_id, month, self.owner_id)

    async def _owned_template(
        self, session: AsyncSession, template_id: int
    ) -> Optional[RecurringTemplate]:
        template = await session.get(RecurringTemplate, template_id)
        if not template or template.kind != self.kind:
            return None
        if template.user_id != self.owner_id:
            raise Unauthorized("Template belongs to another user")
        return template

    def _clean_name(self, name: Optional[str]) -> Optional[str]:
        if self.kind == RecurringKind.salary:
            return None
        name = (name or "").strip()
        if not name:
            raise LedgerValidationError("Name is required")
        return name

    async def create_template(self, data: TemplateIn) -> RecurringTemplate:
        if self.kind == RecurringKind.salary:
            raise LedgerValidationError(
                "Salary has a single template; use create_or_update_template"
            )
        _check_amount(data.default_amount_cents)
        template = RecurringTemplate(
            user_id=self.owner_id,
            kind=self.kind,
            name=self._clean_name(data.name),
            default_amount_cents=data.default_amount_cents,
        )
        async with session_scope(self.sessions) as session:
            session.add(template)
            await session.flush()
            await session.refresh(template)
        logger.info(
            f"template_created: kind={self.kind.value} id={template.id} "
            f"user_id={self.owner_id}"
        )
        return template

    async def list_templates(self) -> list[RecurringTemplate]:
        async with session_scope(self.sessions) as session:
            stmt = (
                select(RecurringTemplate)
                .where(
                    RecurringTemplate.user_id == self.owner_id,
                    RecurringTemplate.kind == self.kind,
                )
                .order_by(RecurringTemplate.created_at.asc(), RecurringTemplate.id.asc())
            )
            return list((await session.scalars(stmt)).all())

    async def get_template(self, template_id: int) -> Optional[RecurringTemplate]:
        async with session_scope(self.sessions) as session:
            template = await session.get(RecurringTemplate, template_id)
            if (
                not template
                or template.kind != self.kind
                or template.user_id != self.owner_id
            ):
                return None
            return template

    async def update_template(
        self, template_id: int, data: TemplatePatch
    ) -> Optional[RecurringTemplate]:
        fields = data.model_dump(exclude_unset=True)
        async with session_scope(self.sessions) as session:
            template = await self._owned_template(session, template_id)
            if not template:
                return None
            if "name" in fields and self.kind != RecurringKind.salary:
                template.name = self._clean_name(fields["name"])
            if fields.get("default_amount_cents") is not None:
                _check_amount(fields["default_amount_cents"])
                template.default_amount_cents = fields["default_amount_cents"]
            await session.flush()
            await session.refresh(template)
            return template

    async def delete_template(self, template_id: int) -> bool:
        async with session_scope(self.sessions) as session:
            template = await self._owned_template(session, template_id)
            if not template:
                return False
            await session.execute(
                delete(RecurringInstance).where(
                    RecurringInstance.template_id == template_id
                )
            )
            await session.delete(template)
        logger.info(
            f"template_deleted: kind={self.kind.value} id={template_id} "
            f"user_id={self.owner_id}"
        )
        return True

    async def _month_instances(
        self, session: AsyncSession, month: str
    ) -> list[RecurringInstance]:
        stmt = (
            select(RecurringInstance)
            .where(
                RecurringInstance.user_id == self.owner_id,
                RecurringInstance.kind == self.kind,
                RecurringInstance.month == month,
            )
            .order_by(RecurringInstance.template_id.asc(), RecurringInstance.id.asc())
        )
        rows = (await session.scalars(stmt)).all()
        grouped: dict[int, list[RecurringInstance]] = {}
        for row in rows:
            grouped.setdefault(row.template_id, []).append(row)
        return [pick_instance(group) for group in grouped.values()]

    async def get_instances(self, month: str) -> list[RecurringInstance]:
        month = parse_month(month)
        async with session_scope(self.sessions) as session:
            return await self._month_instances(session, month)

    async def _get_or_create(
        self, template_id: int, month: str
    ) -> tuple[RecurringInstance, bool]:
        async with session_scope(self.sessions) as session:
            template = await session.get(RecurringTemplate, template_id)
            if not template or template.kind != self.kind:
                raise NotFound(f"Template {template_id} not found")
            if template.user_id != self.owner_id:
                raise Unauthorized("Template belongs to another user")

            existing = (
                await session.scalars(
                    select(RecurringInstance).where(
                        RecurringInstance.template_id == template_id,
                        RecurringInstance.user_id == self.owner_id,
                        RecurringInstance.month == month,
                    )
                )
            ).all()
            if existing:
                return pick_instance(existing), False

            earlier = (
                await session.scalars(
                    select(RecurringInstance)
                    .where(
                        RecurringInstance.template_id == template_id,
                        RecurringInstance.user_id == self.owner_id,
                        RecurringInstance.month < month,
                    )
                    .order_by(RecurringInstance.month.desc())
                )
            ).all()
            amount = template.default_amount_cents
            enabled = True
            if earlier:
                latest_month = earlier[0].month
                previous = pick_instance(r for r in earlier if r.month == latest_month)
                amount = previous.amount_cents
                if self.kind == RecurringKind.fixed_cost:
                    enabled = previous.enabled

            instance = RecurringInstance(
                template_id=template_id,
                user_id=self.owner_id,
                kind=self.kind,
                month=month,
                amount_cents=amount,
                enabled=enabled,
            )
            session.add(instance)
            await session.flush()
            await session.refresh(instance)
        logger.info(
            f"instance_created: kind={self.kind.value} template_id={template_id} "
            f"month={month} amount_cents={amount} rolled_forward={bool(earlier)}"
        )
        return instance, True

    async def get_or_create_instance(
        self, template_id: int, month: str
    ) -> RecurringInstance:
        month = parse_month(month)
        async with self.locks.hold(self._instance_key(template_id, month)):
            instance, _ = await self._get_or_create(template_id, month)
        return instance

    async def ensure_instances_for_month(self, month: str) -> EnsureResult:
        month = parse_month(month)
        async with session_scope(self.sessions) as session:
            templates = (
                await session.scalars(
                    select(RecurringTemplate)
                    .where(
                        RecurringTemplate.user_id == self.owner_id,
                        RecurringTemplate.kind == self.kind,
                    )
                    .order_by(
                        RecurringTemplate.created_at.asc(), RecurringTemplate.id.asc()
                    )
                )
            ).all()
            by_template = {
                i.template_id: i for i in await self._month_instances(session, month)
            }

        result = EnsureResult(month=month)
        for template in templates:
            if template.id in by_template:
                continue
            try:
                async with self.locks.hold(self._instance_key(template.id, month)):
                    instance, created = await self._get_or_create(template.id, month)
            except (NotFound, TransientStoreError) as exc:
                logger.warning(
                    f"ensure_instance_failed: kind={self.kind.value} "
                    f"template_id={template.id} month={month} error={exc}"
                )
                result.failures.append(EnsureFailure(template.id, exc))
                continue
            by_template[template.id] = instance
            if created:
                result.created.append(instance)

        result.instances = [
            by_template[t.id] for t in templates if t.id in by_template
        ]
        logger.info(
            f"ensure_instances: kind={self.kind.value} month={month} "
            f"created={len(result.created)} failed={len(result.failures)}"
        )
        return result

    async def update_instance(
        self, instance_id: int, data: InstancePatch
    ) -> Optional[RecurringInstance]:
        fields = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
        if "enabled" in fields and self.kind != RecurringKind.fixed_cost:
            raise LedgerValidationError("Only fixed costs can be enabled or disabled")
        _check_amount(fields.get("amount_cents"), allow_zero=True)
        async with session_scope(self.sessions) as session:
            instance = await session.get(RecurringInstance, instance_id)
            if not instance or instance.kind != self.kind:
                return None
            if instance.user_id != self.owner_id:
                raise Unauthorized("Instance belongs to another user")
            if "amount_cents" in fields:
                instance.amount_cents = fields["amount_cents"]
            if "enabled" in fields:
                instance.enabled = fields["enabled"]
            await session.flush()
            await session.refresh(instance)
            return instance


class SalaryService(RecurringService):
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        owner_id: str,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        super().__init__(sessions, RecurringKind.salary, owner_id, locks)

    async def create_or_update_template(
        self, default_amount_cents: int
    ) -> RecurringTemplate:
        _check_amount(default_amount_cents)
        async with self.locks.hold((self.kind, "template", self.owner_id)):
            async with session_scope(self.sessions) as session:
                existing = (
                    await session.scalars(
                        select(RecurringTemplate)
                        .where(
                            RecurringTemplate.user_id == self.owner_id,
                            RecurringTemplate.kind == RecurringKind.salary,
                        )
                        .order_by(
                            RecurringTemplate.created_at.asc(),
                            RecurringTemplate.id.asc(),
                        )
                    )
                ).all()
                if existing:
                    if len(existing) > 1:
                        logger.warning(
                            f"duplicate_salary_templates: user_id={self.owner_id} "
                            f"ids={[t.id for t in existing]}"
                        )
                    template = existing[0]
                    template.default_amount_cents = default_amount_cents
                else:
                    template = RecurringTemplate(
                        user_id=self.owner_id,
                        kind=RecurringKind.salary,
                        name=None,
                        default_amount_cents=default_amount_cents,
                    )
                    session.add(template)
                await session.flush()
                await session.refresh(template)
                return template

    async def get_template(
        self, template_id: Optional[int] = None
    ) -> Optional[RecurringTemplate]:
        if template_id is not None:
            return await super().get_template(template_id)
        templates = await self.list_templates()
        return templates[0] if templates else None

    async def get_instance(self, month: str) -> Optional[RecurringInstance]:
        instances = await self.get_instances(month)
        return instances[0] if instances else None
