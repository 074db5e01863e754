import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional

from feed import ChangeEvent, ChangeType
from models import RecordKind
from months import month_key, parse_month

logger = logging.getLogger(__name__)


class MonthReconciler:
    """Keeps one month's record list in step with change-feed events.

    The list stays sorted newest first by date, then creation time and id,
    the same order the store lists a month in. Records are matched by id, so
    an event for a record that was already added optimistically is a no-op.
    """

    def __init__(
        self,
        month: str,
        records: Iterable[Any],
        kind: RecordKind,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self.month = parse_month(month)
        self.kind = kind
        self.on_change = on_change
        self.records: list[Any] = []
        self.reset(records)

    def reset(self, records: Iterable[Any]) -> None:
        self.records = list(records)
        self._sort()

    def _sort(self) -> None:
        self.records.sort(key=lambda r: (r.date, r.created_at, r.id), reverse=True)

    def _index(self, record_id: Optional[int]) -> Optional[int]:
        for idx, record in enumerate(self.records):
            if record.id == record_id:
                return idx
        return None

    def _in_month(self, record: Any) -> bool:
        return month_key(record.date) == self.month

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def _insert(self, record: Any) -> bool:
        if self._index(record.id) is not None:
            return False
        if not self._in_month(record):
            return False
        self.records.append(record)
        self._sort()
        return True

    def add_local(self, record: Any) -> bool:
        added = self._insert(record)
        if added:
            self._changed()
        return added

    def apply(self, event: ChangeEvent) -> bool:
        if event.kind != self.kind:
            return False
        if event.event_type == ChangeType.insert:
            affected = event.record is not None and self._insert(event.record)
        elif event.event_type == ChangeType.update:
            affected = event.record is not None and self._apply_update(event.record)
        elif event.event_type == ChangeType.delete:
            affected = self._apply_delete(event.old_record)
        else:
            affected = False
        if affected:
            self._changed()
        return affected

    def _apply_update(self, record: Any) -> bool:
        idx = self._index(record.id)
        if idx is None:
            return self._insert(record)
        if not self._in_month(record):
            del self.records[idx]
            return True
        self.records[idx] = record
        self._sort()
        return True

    def _apply_delete(self, old_record: Any) -> bool:
        if old_record is None:
            return False
        idx = self._index(old_record.id)
        if idx is None:
            return False
        del self.records[idx]
        return True

    @property
    def ids(self) -> list[int]:
        return [r.id for r in self.records]

    def __len__(self) -> int:
        return len(self.records)


class DebounceState(str, Enum):
    idle = "idle"
    pending = "pending"
    fired = "fired"


class Debouncer:
    """Collapses bursts of triggers into one call of ``action``.

    ``trigger`` arms the debouncer and pushes the deadline ``delay`` seconds
    past the clock; ``poll`` runs the action once the deadline has passed.
    With ``autorun`` an asyncio task sleeps until the deadline and polls;
    without it the caller drives ``poll`` itself, which is how it is tested
    against a fake clock.
    """

    def __init__(
        self,
        action: Callable[[], Awaitable[None]],
        delay: float,
        clock: Callable[[], float] = time.monotonic,
        autorun: bool = True,
    ) -> None:
        self.action = action
        self.delay = delay
        self.clock = clock
        self.autorun = autorun
        self.state = DebounceState.idle
        self.deadline: Optional[float] = None
        self.fire_count = 0
        self._task: Optional[asyncio.Task] = None

    def trigger(self) -> None:
        self.deadline = self.clock() + self.delay
        self.state = DebounceState.pending
        if self.autorun:
            self._ensure_driver()

    def due(self) -> bool:
        return (
            self.state == DebounceState.pending
            and self.deadline is not None
            and self.clock() >= self.deadline
        )

    async def poll(self) -> bool:
        if not self.due():
            return False
        self.state = DebounceState.fired
        try:
            await self.action()
        finally:
            self.fire_count += 1
            # a trigger during the action leaves the state pending
            if self.state == DebounceState.fired:
                self.state = DebounceState.idle
                self.deadline = None
        return True

    def _ensure_driver(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._drive())

    async def _drive(self) -> None:
        while self.state == DebounceState.pending and self.deadline is not None:
            await asyncio.sleep(max(0.0, self.deadline - self.clock()))
            try:
                await self.poll()
            except Exception:
                logger.exception("debounced_action_failed")

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self.state = DebounceState.idle
        self.deadline = None
