"""Record tables and the versioned entity store built on top of them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    Iterable,
    Iterator,
    List,
    Optional,
    TypeVar,
)

T = TypeVar("T")

logger = logging.getLogger(__name__)


class RepositoryError(RuntimeError):
    """Base exception for repository errors."""


class DuplicateRecordError(RepositoryError):
    """Raised when attempting to insert a record that already exists."""


class RecordNotFoundError(RepositoryError):
    """Raised when a requested record is missing."""


class InMemoryRecords(Generic[T]):
    """Record table of one entity type, held in a dict keyed by entity id.

    Iteration follows insertion order, which is the order list views show.
    Lookups by attribute scan the table; ``SQLiteRecords`` answers the same
    lookups from indexed columns.
    """

    def __init__(self, entities: Iterable[T] = ()) -> None:
        self._rows: Dict[int, T] = {}
        for entity in entities:
            self.insert(entity)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._rows

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[T]:
        return iter(self.list())

    def insert(self, entity: T) -> None:
        if entity.id in self._rows:
            raise DuplicateRecordError(f"Record with id {entity.id!r} already exists")
        self._rows[entity.id] = entity

    def replace(self, entity: T) -> None:
        if entity.id not in self._rows:
            raise RecordNotFoundError(f"Record with id {entity.id!r} not found")
        self._rows[entity.id] = entity

    def get(self, entity_id: int) -> T:
        try:
            return self._rows[entity_id]
        except KeyError as exc:
            raise RecordNotFoundError(f"Record with id {entity_id!r} not found") from exc

    def remove(self, entity_id: int) -> None:
        if self._rows.pop(entity_id, None) is None:
            raise RecordNotFoundError(f"Record with id {entity_id!r} not found")

    def list(self) -> List[T]:
        return list(self._rows.values())

    def find_by(self, attribute: str, value: Any) -> List[T]:
        return [
            entity
            for entity in self._rows.values()
            if getattr(entity, attribute, None) == value
        ]

    def max_id(self) -> int:
        return max(self._rows, default=0)


@dataclass(frozen=True, slots=True)
class StoreEvent:
    """Notification sent to store subscribers after every mutation."""

    kind: str
    entity_id: int
    version: int


StoreListener = Callable[[StoreEvent], None]
DependentsResolver = Callable[[int], List[Any]]


class EntityStore(Generic[T]):
    """Versioned collection of flat entities keyed by integer id.

    Wraps a record table (in-memory or SQLite) and adds id
    assignment, hierarchy queries and change notification. Consumers such
    as tree caches and live filters subscribe instead of polling.
    """

    def __init__(
        self,
        records: Optional[Any] = None,
        *,
        dependents: Optional[DependentsResolver] = None,
    ) -> None:
        self.records = records if records is not None else InMemoryRecords()
        self._dependents = dependents
        self._listeners: List[StoreListener] = []
        self._version = 0
        self._next_id: Optional[int] = None

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self.records

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[T]:
        return iter(self.get_all())

    @property
    def version(self) -> int:
        return self._version

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that removes it."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_dependents_resolver(self, resolver: Optional[DependentsResolver]) -> None:
        self._dependents = resolver

    def _notify(self, kind: str, entity_id: int) -> None:
        self._version += 1
        event = StoreEvent(kind=kind, entity_id=entity_id, version=self._version)
        for listener in list(self._listeners):
            listener(event)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_all(self) -> List[T]:
        return self.records.list()

    def get(self, entity_id: int) -> T:
        return self.records.get(entity_id)

    def find(self, predicate: Callable[[T], bool]) -> Optional[T]:
        for entity in self.records.list():
            if predicate(entity):
                return entity
        return None

    def find_by(self, attribute: str, value: Any) -> List[T]:
        return self.records.find_by(attribute, value)

    def get_children(self, parent_id: Optional[int]) -> List[T]:
        return self.records.find_by("parent_id", parent_id)

    def get_dependents(self, entity_id: int) -> List[Any]:
        if self._dependents is None:
            return []
        return list(self._dependents(entity_id))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def _allocate_id(self) -> int:
        if self._next_id is None:
            self._next_id = self.records.max_id() + 1
        allocated = self._next_id
        while allocated in self.records:
            allocated += 1
        self._next_id = allocated + 1
        return allocated

    def add(self, entity: T) -> T:
        if not getattr(entity, "id", None):
            entity.id = self._allocate_id()
        self.records.insert(entity)
        logger.debug("Added %s %s", type(entity).__name__, entity.id)
        self._notify("add", entity.id)
        return entity

    def update(self, entity: T) -> T:
        self.records.replace(entity)
        self._notify("update", entity.id)
        return entity

    def delete(self, entity_id: int) -> None:
        self.records.remove(entity_id)
        logger.debug("Deleted record %s", entity_id)
        self._notify("delete", entity_id)


__all__ = [
    "InMemoryRecords",
    "EntityStore",
    "StoreEvent",
    "RepositoryError",
    "DuplicateRecordError",
    "RecordNotFoundError",
]
