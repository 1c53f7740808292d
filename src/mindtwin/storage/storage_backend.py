"""
Storage Backend Infrastructure

Abstract key-value document store used by the repositories. Documents are
plain dictionaries grouped into named collections and addressed by string
keys. The production store is an external collaborator; the in-memory
backend serves tests and local runs.

Query filters are equality matches, or operator documents using ``$gte``,
``$lte`` and ``$in``::

    {"subject_id": "s1", "timestamp_epoch": {"$gte": 1700000000.0}}
"""

import operator
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional


class StorageBackend(ABC):
    """Abstract interface for storage backends."""

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the storage backend."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect from the storage backend."""
        pass

    @abstractmethod
    async def store(self, collection: str, key: str, data: Dict[str, Any]) -> None:
        """Insert or replace the document under ``key``."""
        pass

    @abstractmethod
    async def retrieve(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def query(self, collection: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Documents in ``collection`` matching every filter."""
        pass

    @abstractmethod
    async def delete(self, collection: str, key: str) -> bool:
        """Delete one document; returns whether it existed."""
        pass

    async def delete_many(self, collection: str, keys: Iterable[str]) -> int:
        """Delete several documents; returns how many existed.

        Backends with a native bulk delete should override this.
        """
        removed = 0
        for key in keys:
            if await self.delete(collection, key):
                removed += 1
        return removed


class InMemoryStorageBackend(StorageBackend):
    """Dictionary-backed storage suitable for tests and local runs.

    Documents are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._connected: bool = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        # data is kept so the backend can be reused across start/stop in tests
        self._connected = False

    async def store(self, collection: str, key: str, data: Dict[str, Any]) -> None:
        self._collections.setdefault(collection, {})[key] = dict(data)

    async def retrieve(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        document = self._collections.get(collection, {}).get(key)
        return dict(document) if document is not None else None

    async def query(self, collection: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        documents = self._collections.get(collection, {}).values()
        return [dict(d) for d in documents if matches(d, filters)]

    async def delete(self, collection: str, key: str) -> bool:
        return self._collections.get(collection, {}).pop(key, None) is not None

    def count(self, collection: str) -> int:
        return len(self._collections.get(collection, {}))


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "$gte": operator.ge,
    "$lte": operator.le,
    "$in": lambda value, options: value in options,
}


def matches(document: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    """Whether ``document`` satisfies every filter; a missing field never matches an operator."""
    for field, expected in filters.items():
        value = document.get(field)
        if not isinstance(expected, dict):
            if value != expected:
                return False
            continue
        for op, operand in expected.items():
            test = _OPERATORS.get(op)
            if test is None:
                raise ValueError(f"Unsupported query operator: {op}")
            if value is None or not test(value, operand):
                return False
    return True
