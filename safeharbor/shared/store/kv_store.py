"""Key-value / document store interface consumed by Safeharbor services.

Services never keep their own global maps; every record, history list
and cache goes through an injected KeyValueStore so eviction policy is
explicit and a durable backend can be substituted.

Records are addressed by ``(namespace, key)``. Lists support bounded
append so per-user histories cannot grow without limit.
"""
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for store errors."""
    pass


class NotFoundError(RepositoryError):
    """Record not found in store."""
    pass


class DuplicateError(RepositoryError):
    """Record already exists."""
    pass


class KeyValueStore(ABC):
    """Abstract store with TTL on records and capped lists."""

    @abstractmethod
    def get(self, namespace: str, key: str) -> Optional[Any]:
        """Return the record, or None if missing or expired."""

    @abstractmethod
    def put(
        self,
        namespace: str,
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        """Insert or replace a record."""

    @abstractmethod
    def insert(self, namespace: str, key: str, value: Any) -> None:
        """Insert a record that must not already exist.

        Raises:
            DuplicateError: If the key is already present
        """

    @abstractmethod
    def delete(self, namespace: str, key: str) -> bool:
        """Delete a record. Returns False if it did not exist."""

    @abstractmethod
    def values(self, namespace: str) -> List[Any]:
        """All live records in a namespace."""

    @abstractmethod
    def append(
        self,
        namespace: str,
        key: str,
        value: Any,
        max_len: Optional[int] = None,
    ) -> int:
        """Append to a list, evicting the oldest entries beyond ``max_len``.

        Returns:
            Length of the list after the append
        """

    @abstractmethod
    def get_list(self, namespace: str, key: str) -> List[Any]:
        """Return a copy of a list, oldest first."""

    @abstractmethod
    def replace_list(self, namespace: str, key: str, items: List[Any]) -> None:
        """Overwrite a list, used for pruning."""

    @abstractmethod
    def delete_list(self, namespace: str, key: str) -> bool:
        """Remove a list. Returns False if it did not exist."""

    @abstractmethod
    def list_keys(self, namespace: str) -> List[str]:
        """Keys of all lists in a namespace."""

    def require(self, namespace: str, key: str) -> Any:
        """Like get, but raise NotFoundError for a missing record."""
        value = self.get(namespace, key)
        if value is None:
            raise NotFoundError(f"{namespace}/{key} not found")
        return value


class InMemoryStore(KeyValueStore):
    """Thread-safe in-process store for development and tests.

    Expired records are dropped lazily on read.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.utcnow):
        self._clock = clock
        self._lock = threading.RLock()
        self._records: Dict[str, Dict[str, Tuple[Any, Optional[datetime]]]] = {}
        self._lists: Dict[str, Dict[str, Deque[Any]]] = {}

        logger.info("IN_MEMORY_STORE_INITIALIZED")

    def _live_items(self, namespace: str) -> Iterator[Tuple[str, Any]]:
        now = self._clock()
        bucket = self._records.get(namespace, {})
        expired = [k for k, (_, exp) in bucket.items() if exp is not None and exp <= now]
        for key in expired:
            del bucket[key]
        for key, (value, _) in bucket.items():
            yield key, value

    def get(self, namespace: str, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._records.get(namespace, {}).get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                del self._records[namespace][key]
                return None
            return value

    def put(self, namespace, key, value, ttl_seconds=None) -> None:
        expires_at = None
        if ttl_seconds is not None:
            expires_at = self._clock() + timedelta(seconds=ttl_seconds)
        with self._lock:
            self._records.setdefault(namespace, {})[key] = (value, expires_at)

    def insert(self, namespace, key, value) -> None:
        with self._lock:
            if self.get(namespace, key) is not None:
                raise DuplicateError(f"{namespace}/{key} already exists")
            self.put(namespace, key, value)

    def delete(self, namespace, key) -> bool:
        with self._lock:
            return self._records.get(namespace, {}).pop(key, None) is not None

    def values(self, namespace) -> List[Any]:
        with self._lock:
            return [value for _, value in self._live_items(namespace)]

    def append(self, namespace, key, value, max_len=None) -> int:
        with self._lock:
            lists = self._lists.setdefault(namespace, {})
            existing = lists.get(key)
            if existing is None or existing.maxlen != max_len:
                existing = deque(existing or (), maxlen=max_len)
                lists[key] = existing
            existing.append(value)
            return len(existing)

    def get_list(self, namespace, key) -> List[Any]:
        with self._lock:
            return list(self._lists.get(namespace, {}).get(key, ()))

    def replace_list(self, namespace, key, items) -> None:
        with self._lock:
            lists = self._lists.setdefault(namespace, {})
            current = lists.get(key)
            max_len = current.maxlen if current is not None else None
            lists[key] = deque(items, maxlen=max_len)

    def delete_list(self, namespace, key) -> bool:
        with self._lock:
            return self._lists.get(namespace, {}).pop(key, None) is not None

    def list_keys(self, namespace) -> List[str]:
        with self._lock:
            return list(self._lists.get(namespace, {}).keys())
