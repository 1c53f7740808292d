"""
This module initializes the storage sub-package: the abstract document store
the services persist through, its in-memory implementation, and the typed
repositories built on top of it.
"""
from .storage_backend import StorageBackend, InMemoryStorageBackend
from .repository import (
    Repository, TwinStateRepository, TwinHistoryRepository,
    PersonalizationRepository, BeliefStateRepository
)

__all__ = [
    # Storage backends
    "StorageBackend",
    "InMemoryStorageBackend",

    # Repositories
    "Repository",
    "TwinStateRepository",
    "TwinHistoryRepository",
    "PersonalizationRepository",
    "BeliefStateRepository",
]
