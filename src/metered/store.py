import threading
import time
from typing import Any, Callable, Protocol, Union


class KeyValueStore(Protocol):
    """Minimal TTL store the tracker persists usage windows in."""

    def get(self, key: str) -> Union[Any, None]: ...

    def set(self, key: str, value: Any, ttl: float) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """In-process TTL store; the default coordination point for a single process.

    Entries are evicted lazily on read once their TTL has passed.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._items: dict[str, tuple[Any, float]] = {}

    def get(self, key: str) -> Union[Any, None]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires_at = item
            if self._clock() >= expires_at:
                del self._items[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._items[key] = (value, self._clock() + ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for _, exp in self._items.values() if exp > now)
