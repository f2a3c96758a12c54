"""
Key-value store with per-key TTL for auxiliary tracking state: device fingerprints,
location history, initiation rate limits. Best effort; never part of a ledger unit.
"""

import copy
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Protocol, Tuple

from feeledger.core.clock import Clock, utcnow


class KeyValueStore(Protocol):
    async def get(self, key: str, default: Any = None) -> Any:
        ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class InMemoryTTLStore:
    """Process-local store. Values are copied in and out so callers cannot alias them."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[Any, datetime]] = {}

    async def get(self, key: str, default: Any = None) -> Any:
        entry = self._data.get(key)
        if entry is None:
            return default
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return default
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._data[key] = (copy.deepcopy(value), self._clock() + timedelta(seconds=ttl_seconds))

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


async def acquire_rate_limit(store: KeyValueStore, key: str, ttl_seconds: int) -> bool:
    """True and mark the key when no attempt was recorded within the window, else False."""
    if await store.get(key) is not None:
        return False
    await store.set(key, utcnow().isoformat(), ttl_seconds)
    return True


def initiation_rate_key(student_id) -> str:
    return f"payment_attempt:{student_id}"


def device_key(student_id) -> str:
    return f"student_devices:{student_id}"


def location_key(student_id) -> str:
    return f"student_location:{student_id}"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
