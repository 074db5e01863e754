import json
import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import session_scope
from models import ActivityAction, ActivityEntry, RecordKind

logger = logging.getLogger(__name__)

_TRACKED_FIELDS = ("amount_cents", "description", "category", "date")


def format_amount(cents: int) -> str:
    return f"{cents / 100:.2f}"


def _snapshot(record: Any) -> dict[str, object]:
    data: dict[str, object] = {}
    for field in _TRACKED_FIELDS:
        if hasattr(record, field):
            value = getattr(record, field)
            if hasattr(value, "isoformat"):
                value = value.isoformat()
            elif hasattr(value, "value"):
                value = value.value
            data[field] = value
    return data


def _label(kind: RecordKind, record: Any) -> str:
    description = getattr(record, "description", "") or ""
    if not description and kind == RecordKind.expense:
        category = getattr(record, "category", None)
        description = getattr(category, "value", "") or ""
    return description


def describe_change(kind: RecordKind, before: Any, after: Any) -> str:
    noun = kind.value.replace("_", " ")
    old = _snapshot(before)
    new = _snapshot(after)
    changes: list[str] = []
    if old.get("amount_cents") != new.get("amount_cents"):
        changes.append(
            f"amount from {format_amount(int(old.get('amount_cents') or 0))} "
            f"to {format_amount(int(new.get('amount_cents') or 0))}"
        )
    if old.get("description") != new.get("description"):
        changes.append(
            f'description from "{old.get("description")}" to "{new.get("description")}"'
        )
    if old.get("category") != new.get("category"):
        changes.append(f"category from {old.get('category')} to {new.get('category')}")
    if old.get("date") != new.get("date"):
        changes.append(f"date from {old.get('date')} to {new.get('date')}")
    if changes:
        return f"Updated {noun}: " + ", ".join(changes)
    return f"Updated {noun}: {_label(kind, after)} - {format_amount(after.amount_cents)}"


class ActivityLogService:
    """Audit trail of one-time record mutations.

    Writes use their own session so a logging failure can never roll back the
    mutation being logged; failures are reported and discarded.
    """

    def __init__(
        self, sessions: async_sessionmaker[AsyncSession], owner_id: str
    ) -> None:
        self.sessions = sessions
        self.owner_id = owner_id

    async def record(
        self,
        kind: RecordKind,
        action: ActivityAction,
        record: Any,
        *,
        before: Optional[Any] = None,
    ) -> Optional[ActivityEntry]:
        noun = kind.value.replace("_", " ")
        if action == ActivityAction.create:
            details = (
                f"Added {noun}: {_label(kind, record)} - "
                f"{format_amount(record.amount_cents)}"
            )
            snapshot = {"record": _snapshot(record)}
        elif action == ActivityAction.update:
            details = describe_change(kind, before, record)
            snapshot = {"before": _snapshot(before), "after": _snapshot(record)}
        else:
            details = (
                f"Deleted {noun}: {_label(kind, record)} - "
                f"{format_amount(record.amount_cents)}"
            )
            snapshot = {"record": _snapshot(record)}

        try:
            async with session_scope(self.sessions) as session:
                entry = ActivityEntry(
                    user_id=self.owner_id,
                    kind=kind,
                    action=action,
                    record_id=record.id,
                    details=details,
                    snapshot_json=json.dumps(snapshot),
                )
                session.add(entry)
            return entry
        except Exception:
            logger.warning(
                f"activity_log_failed: owner={self.owner_id} kind={kind.value} "
                f"action={action.value} record_id={record.id}",
                exc_info=True,
            )
            return None

    async def recent(
        self, limit: int = 50, *, kind: Optional[RecordKind] = None
    ) -> list[ActivityEntry]:
        async with session_scope(self.sessions) as session:
            stmt = (
                select(ActivityEntry)
                .where(ActivityEntry.user_id == self.owner_id)
                .order_by(ActivityEntry.created_at.desc(), ActivityEntry.id.desc())
                .limit(limit)
            )
            if kind:
                stmt = stmt.where(ActivityEntry.kind == kind)
            return list((await session.scalars(stmt)).all())
