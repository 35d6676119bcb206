"""Collaborator contracts shared by the memory and Redis backends.

Services depend on these protocols only; which backend fulfils them is decided
when the dependency container is built.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol


class RecordQuery(Protocol):
    def where(self, **criteria: Any) -> "RecordQuery": ...

    def first(self) -> Optional[Dict[str, Any]]: ...

    def get(self) -> List[Dict[str, Any]]: ...

    def insert(self, row: Dict[str, Any]) -> Dict[str, Any]: ...

    def update(self, values: Dict[str, Any]) -> int: ...

    def delete(self) -> int: ...


class RecordStore(Protocol):
    def table(self, name: str) -> RecordQuery: ...


class TTLCache(Protocol):
    """Key/value store with server-side expiry and atomic counters."""

    async def get(self, key: str) -> Optional[str]: ...

    async def put(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def forget(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def add(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def increment(self, key: str, ttl_seconds: int) -> int: ...

    async def decay(self, key: str, factor: float) -> int: ...

    async def ttl(self, key: str) -> int: ...


def normalize_id(value: Any) -> Optional[str]:
    """Identifiers arrive as ints from routes and strings from tokens."""
    if value is None:
        return None
    return str(value)
