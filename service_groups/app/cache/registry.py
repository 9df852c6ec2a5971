"""
Generic keyed-entity registry.
"""

import threading
from abc import ABC, abstractmethod
from typing import Dict, Generic, List, Optional, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class Registry(ABC, Generic[K, V]):
    """Process-wide map from normalized key to loaded entity.

    Reads and writes go through a re-entrant lock, so the registry can be
    shared by concurrent callers. ``get_all`` makes no ordering promise.
    """

    def __init__(self):
        self._entities: Dict[K, V] = {}
        self._registry_lock = threading.RLock()

    @abstractmethod
    def create(self, key: K) -> V:
        """Build a new in-memory entity for a normalized key."""

    def normalize(self, key: K) -> K:
        return key

    def get_or_create(self, key: K) -> V:
        key = self.normalize(key)
        with self._registry_lock:
            entity = self._entities.get(key)
            if entity is None:
                entity = self.create(key)
                self._entities[key] = entity
            return entity

    def get(self, key: K) -> Optional[V]:
        with self._registry_lock:
            return self._entities.get(self.normalize(key))

    def contains(self, key: K) -> bool:
        with self._registry_lock:
            return self.normalize(key) in self._entities

    def __contains__(self, key: object) -> bool:
        return self.contains(key)  # type: ignore[arg-type]

    def put(self, key: K, entity: V) -> None:
        with self._registry_lock:
            self._entities[self.normalize(key)] = entity

    def remove(self, key: K) -> Optional[V]:
        """Evict from memory only; nothing is persisted."""
        with self._registry_lock:
            return self._entities.pop(self.normalize(key), None)

    def get_all(self) -> List[V]:
        with self._registry_lock:
            return list(self._entities.values())

    def __len__(self) -> int:
        return len(self._entities)
