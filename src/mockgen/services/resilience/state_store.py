"""Key-value state store for process-wide resilience state.

Circuit breaker and rate limiter state live behind this interface so that a
multi-instance deployment can swap the in-memory store for a shared cache
without touching call sites. Values are opaque to the store.
"""

import asyncio
from typing import Any, Protocol


class StateStore(Protocol):
    """Async key-value store used by the breaker registry and rate limiters."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def items(self, prefix: str = "") -> list[tuple[str, Any]]: ...


class InMemoryStateStore:
    """Process-local StateStore backed by a dict.

    Single-process only: every instance of the service keeps its own copy.
    """

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Any | None:
        return self._data.get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            self._data[key] = value

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def items(self, prefix: str = "") -> list[tuple[str, Any]]:
        return [(k, v) for k, v in list(self._data.items()) if k.startswith(prefix)]

    def __len__(self) -> int:
        return len(self._data)
