import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, NamedTuple, Optional

from models import RecordKind, RecurringKind
from months import previous_month

logger = logging.getLogger(__name__)


class CacheKind(str, Enum):
    expenses = "expenses"
    stats = "stats"
    fixed_costs = "fixed_costs"
    investments = "investments"
    salary = "salary"
    one_time_investments = "one_time_investments"

    @classmethod
    def for_recurring(cls, kind: RecurringKind) -> "CacheKind":
        return {
            RecurringKind.fixed_cost: cls.fixed_costs,
            RecurringKind.investment: cls.investments,
            RecurringKind.salary: cls.salary,
        }[kind]

    @classmethod
    def for_record(cls, kind: RecordKind) -> "CacheKind":
        return {
            RecordKind.expense: cls.expenses,
            RecordKind.one_time_investment: cls.one_time_investments,
        }[kind]


class CacheKey(NamedTuple):
    kind: CacheKind
    month: str


@dataclass
class CacheEntry:
    payload: Any
    stamp: float


class LedgerCache:
    """Time-bounded cache of month-scoped reads.

    ``get`` treats entries older than ``ttl`` as absent but leaves them in
    place, so ``peek`` can still serve them when the store is unreachable;
    ``sweep`` is what actually evicts. ``set`` drops writes stamped before the
    current entry or before the key was last invalidated, so a slow load that
    started before a mutation cannot overwrite fresher data.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self.clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._invalidated_at: dict[CacheKey, float] = {}

    def now(self) -> float:
        return self.clock()

    def get(self, key: CacheKey, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        if self.clock() - entry.stamp >= self.ttl:
            return default
        return entry.payload

    def peek(self, key: CacheKey, default: Any = None) -> Any:
        entry = self._entries.get(key)
        return entry.payload if entry else default

    def set(self, key: CacheKey, payload: Any, as_of: Optional[float] = None) -> bool:
        stamp = self.clock() if as_of is None else as_of
        current = self._entries.get(key)
        if current is not None and stamp < current.stamp:
            logger.debug(f"cache_set_dropped: key={key.kind.value}/{key.month} reason=older")
            return False
        invalidated = self._invalidated_at.get(key)
        if invalidated is not None and stamp < invalidated:
            logger.debug(
                f"cache_set_dropped: key={key.kind.value}/{key.month} reason=invalidated"
            )
            return False
        self._entries[key] = CacheEntry(payload, stamp)
        return True

    def invalidate_key(self, key: CacheKey) -> None:
        self._entries.pop(key, None)
        self._invalidated_at[key] = self.clock()

    def invalidate(self, kind: CacheKind, month: str) -> None:
        self.invalidate_key(CacheKey(kind, month))
        self.invalidate_key(CacheKey(CacheKind.stats, month))
        # the summary view compares against the previous month
        if kind in (CacheKind.expenses, CacheKind.stats):
            self.invalidate_key(CacheKey(CacheKind.stats, previous_month(month)))

    def invalidate_month(self, month: str) -> None:
        for kind in CacheKind:
            self.invalidate_key(CacheKey(kind, month))

    def sweep(self) -> int:
        now = self.clock()
        expired = [k for k, e in self._entries.items() if now - e.stamp >= self.ttl]
        for key in expired:
            del self._entries[key]
        stale_marks = [
            k for k, ts in self._invalidated_at.items() if now - ts >= self.ttl
        ]
        for key in stale_marks:
            del self._invalidated_at[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        self._invalidated_at.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries
