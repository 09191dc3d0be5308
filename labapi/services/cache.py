import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

_MISSING = object()


class MemoryCache:
    """Process-local cache with explicit invalidation.

    Entries live until invalidated, or for ``ttl_seconds`` when given. One
    instance is injected per consumer so tests control its lifetime.
    """

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            value, expires = self._data.get(key, (_MISSING, None))
            if value is _MISSING:
                return default
            if expires is not None and expires <= self._clock():
                del self._data[key]
                return default
            return value

    def put(self, key: str, value: Any) -> None:
        expires = self._clock() + self.ttl_seconds if self.ttl_seconds else None
        with self._lock:
            self._data[key] = (value, expires)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
