from __future__ import annotations

import copy
import math
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from tenantguard.logging import get_logger
from tenantguard.storage.errors import ConstraintViolation

DEFAULT_UNIQUE_KEYS: Dict[str, Sequence[Tuple[str, ...]]] = {
    "users": [("email",)],
    "tenants": [("code",)],
    "permissions": [("name",)],
    "roles": [("tenant_id", "name")],
}


def _same(stored: Any, wanted: Any) -> bool:
    if stored is None or wanted is None:
        return stored is None and wanted is None
    if isinstance(stored, bool) or isinstance(wanted, bool):
        return stored == wanted
    if isinstance(stored, (list, dict, tuple)) or isinstance(wanted, (list, dict, tuple)):
        return stored == wanted
    # ids arrive as ints from routes and strings from token claims
    return str(stored) == str(wanted)


def _matches(row: Dict[str, Any], criteria: Dict[str, Any]) -> bool:
    for key, wanted in criteria.items():
        if key.endswith("__in"):
            column = key[: -len("__in")]
            if not any(_same(row.get(column), candidate) for candidate in wanted):
                return False
        elif not _same(row.get(key), wanted):
            return False
    return True


class MemoryQuery:
    """Chainable query over one in-memory table.

    ``where`` accepts equality criteria and ``column__in=[...]`` membership
    tests. Every terminal operation runs under the store lock, so a
    conditional ``update`` behaves like ``UPDATE ... WHERE`` in SQL.
    """

    def __init__(
        self, store: "MemoryRecordStore", name: str, criteria: Optional[Dict[str, Any]] = None
    ) -> None:
        self._store = store
        self._name = name
        self._criteria = dict(criteria or {})

    def where(self, **criteria: Any) -> "MemoryQuery":
        merged = dict(self._criteria)
        merged.update(criteria)
        return MemoryQuery(self._store, self._name, merged)

    def first(self) -> Optional[Dict[str, Any]]:
        with self._store._data_lock:
            for row in self._store._rows(self._name):
                if _matches(row, self._criteria):
                    return copy.deepcopy(row)
        return None

    def get(self) -> List[Dict[str, Any]]:
        with self._store._data_lock:
            return [
                copy.deepcopy(row)
                for row in self._store._rows(self._name)
                if _matches(row, self._criteria)
            ]

    def insert(self, row: Dict[str, Any]) -> Dict[str, Any]:
        if self._criteria:
            raise ValueError("insert does not accept where() criteria")
        with self._store._data_lock:
            record = copy.deepcopy(row)
            if record.get("id") is None:
                record["id"] = self._store._next_id(self._name)
            else:
                record["id"] = str(record["id"])
            self._store._check_unique(self._name, record)
            self._store._rows(self._name).append(record)
            return copy.deepcopy(record)

    def update(self, values: Dict[str, Any]) -> int:
        with self._store._data_lock:
            rows = self._store._rows(self._name)
            targets = [row for row in rows if _matches(row, self._criteria)]
            for row in targets:
                candidate = {**row, **copy.deepcopy(values)}
                self._store._check_unique(self._name, candidate, ignore=row)
            for row in targets:
                row.update(copy.deepcopy(values))
            return len(targets)

    def delete(self) -> int:
        with self._store._data_lock:
            rows = self._store._rows(self._name)
            keep = [row for row in rows if not _matches(row, self._criteria)]
            removed = len(rows) - len(keep)
            rows[:] = keep
            return removed


class MemoryRecordStore:
    """In-process record store exposing the ``table(name)`` query contract."""

    def __init__(
        self, unique_keys: Optional[Dict[str, Sequence[Tuple[str, ...]]]] = None
    ) -> None:
        self.logger = get_logger(__name__)
        self._tables: Dict[str, List[Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._unique_keys = dict(DEFAULT_UNIQUE_KEYS if unique_keys is None else unique_keys)
        # RLock so a query may be issued while another holds the lock in-thread
        self._data_lock = threading.RLock()

    def table(self, name: str) -> MemoryQuery:
        return MemoryQuery(self, name)

    def _rows(self, name: str) -> List[Dict[str, Any]]:
        return self._tables.setdefault(name, [])

    def _next_id(self, name: str) -> str:
        existing = {row.get("id") for row in self._rows(name)}
        seq = self._sequences.get(name, 0)
        while True:
            seq += 1
            if str(seq) not in existing:
                break
        self._sequences[name] = seq
        return str(seq)

    def _check_unique(
        self, name: str, record: Dict[str, Any], *, ignore: Optional[Dict[str, Any]] = None
    ) -> None:
        keys: Iterable[Tuple[str, ...]] = [("id",), *self._unique_keys.get(name, [])]
        for columns in keys:
            if any(record.get(column) is None for column in columns):
                continue
            for row in self._rows(name):
                if row is ignore:
                    continue
                if all(_same(row.get(column), record.get(column)) for column in columns):
                    self.logger.warning(
                        "record_unique_violation", table=name, columns=list(columns)
                    )
                    raise ConstraintViolation(
                        f"{name} already contains this {'/'.join(columns)}",
                        {"table": name, "columns": list(columns)},
                    )


class MemoryCache:
    """In-process TTL cache with the same contract as ``RedisCache``.

    Expiry is evaluated against the injected clock on every access, so an entry
    is gone the moment its TTL elapses even without a sweeper.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry

    def _expiry(self, ttl_seconds: int) -> float:
        return self._clock() + max(1, int(ttl_seconds))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (str(value), self._expiry(ttl_seconds))

    async def forget(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._entries[key] = (str(value), self._expiry(ttl_seconds))
            return True

    async def increment(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            entry = self._live(key)
            count = int(entry[0]) + 1 if entry else 1
            self._entries[key] = (str(count), self._expiry(ttl_seconds))
            return count

    async def decay(self, key: str, factor: float) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return 0
            count = int(entry[0])
            if count <= 0:
                return 0
            decayed = max(1, int(math.floor(count * factor)))
            self._entries[key] = (str(decayed), entry[1])
            return decayed

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            expires_at = entry[1]
            if expires_at is None:
                return -1
            return max(1, int(math.ceil(expires_at - self._clock())))

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
