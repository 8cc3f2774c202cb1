"""Storage interface for Safeharbor services.

Services receive a KeyValueStore through their constructor; the
in-memory implementation backs development and tests.
"""

from .kv_store import (
    KeyValueStore,
    InMemoryStore,
    RepositoryError,
    NotFoundError,
    DuplicateError,
)

__all__ = [
    "KeyValueStore",
    "InMemoryStore",
    "RepositoryError",
    "NotFoundError",
    "DuplicateError",
]
