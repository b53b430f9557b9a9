"""Key/value state store used for run locks, import toggles and sync cursors"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple


def lock_key(account_id: str) -> str:
    return f"import:lock:{account_id}"


def disabled_key(account_id: str) -> str:
    return f"import:disabled:{account_id}"


def cursor_key(source: str, account_id: str) -> str:
    return f"import:last_sync:{source}:{account_id}"


class StateStore(ABC):
    """Injected key/value store with optional per-key expiry (seconds)"""

    @abstractmethod
    def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None: ...

    @abstractmethod
    def expire(self, key: str, ttl: int) -> bool:
        """Reset a key's expiry; False when the key does not exist"""

    @abstractmethod
    def delete(self, key: str) -> None: ...

    @abstractmethod
    def set_if_absent(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Atomic create; False when a live value already exists"""


class InMemoryStateStore(StateStore):
    """Process-local store; expired keys are dropped lazily on access"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _deadline(self, ttl: Optional[int]) -> Optional[float]:
        return None if ttl is None else self._clock() + ttl

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        with self._lock:
            self._data[key] = (value, self._deadline(ttl))

    def expire(self, key: str, ttl: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], self._deadline(ttl))
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def set_if_absent(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._deadline(ttl))
            return True
