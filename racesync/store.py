"""Keyed, ordered local mirrors of server-owned collections."""

import logging
from typing import Any, Callable, Generic, Iterable, TypeVar

from .models import Application, Race

logger = logging.getLogger(__name__)

T = TypeVar("T", Race, Application)

StoreListener = Callable[[list[Any]], None]


class EntityStore(Generic[T]):
    """Ordered collection of entities keyed by ``id``.

    The store is the single source of current local truth for one entity
    type. It is mutated only through ``upsert``, ``remove``, ``replace_all``,
    ``restore`` and ``clear``; each of those notifies subscribers with the
    new ordered list.

    Entities are immutable dataclasses, so a snapshot is a tuple of the
    current entries and can be handed back to ``restore`` later.
    """

    def __init__(
        self,
        name: str,
        sort_key: Callable[[T], Any] | None = None,
    ):
        """Initialize the store.

        Args:
            name: Collection name used in logs ("races", "applications").
            sort_key: Key function for display order. None keeps insertion
                order.
        """
        self.name = name
        self._sort_key = sort_key
        self._entries: dict[str, T] = {}
        self._order: list[str] = []
        self._listeners: list[StoreListener] = []
        self._generation = 0

    @property
    def generation(self) -> int:
        """Counter bumped whenever the store is cleared."""
        return self._generation

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._entries

    def ids(self) -> list[str]:
        return list(self._order)

    # Shadows the builtin list for the rest of the class body.
    def list(self) -> list[T]:
        """Return the entities in display order."""
        return [self._entries[i] for i in self._order]

    def get(self, entity_id: str) -> T | None:
        return self._entries.get(entity_id)

    def upsert(self, entity: T, position: int | None = None) -> None:
        """Insert the entity or replace the one sharing its id.

        Args:
            entity: Entity to store.
            position: Index for a newly inserted entity in an unsorted store.
                Used to put a removed entity back where it was. Ignored for
                replacements and for sorted stores.
        """
        if entity.id not in self._entries:
            if position is None:
                self._order.append(entity.id)
            else:
                self._order.insert(max(0, position), entity.id)
        self._entries[entity.id] = entity
        self._resort()
        self._notify()

    def remove(self, entity_id: str) -> T | None:
        """Remove an entity by id. Absent ids are ignored.

        Returns:
            The removed entity, or None if it was not present.
        """
        entity = self._entries.pop(entity_id, None)
        if entity is None:
            return None
        self._order.remove(entity_id)
        self._notify()
        return entity

    def snapshot(self) -> tuple[T, ...]:
        """Immutable copy of the current contents, in order."""
        return tuple(self.list())

    def restore(self, snapshot: Iterable[T]) -> None:
        """Make the store hold exactly the entities of ``snapshot``."""
        self._load(snapshot)
        self._notify()

    def replace_all(self, entities: Iterable[T]) -> None:
        """Replace the contents wholesale with an authoritative listing.

        Later duplicates of an id replace earlier ones.
        """
        self._load(entities)
        logger.debug(f"Store '{self.name}' replaced with {len(self._order)} entries")
        self._notify()

    def clear(self) -> None:
        """Drop all entries and invalidate pending work against this store."""
        self._entries.clear()
        self._order.clear()
        self._generation += 1
        self._notify()

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register for change notifications.

        Returns:
            Callable that removes the listener again.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _load(self, entities: Iterable[T]) -> None:
        self._entries = {}
        self._order = []
        for entity in entities:
            if entity.id not in self._entries:
                self._order.append(entity.id)
            self._entries[entity.id] = entity
        self._resort()

    def _resort(self) -> None:
        if self._sort_key is None:
            return
        key = self._sort_key
        # sorted() is stable, so equal names keep their insertion order
        self._order.sort(key=lambda i: key(self._entries[i]))

    def _notify(self) -> None:
        current = self.list()
        for listener in list(self._listeners):
            try:
                listener(current)
            except Exception as e:
                logger.error(f"Store '{self.name}' listener failed: {e}", exc_info=True)


def name_collation_key(name: str) -> tuple[str, str]:
    """Sort key ordering names alphabetically, ignoring case first.

    Names that differ only in case are ordered lowercase first, so
    "apple" < "Apple" < "Banana" < "zurich".
    """
    return (name.casefold(), name.swapcase())


def race_store() -> EntityStore[Race]:
    """Store for races, ordered by name."""
    return EntityStore("races", sort_key=lambda race: name_collation_key(race.name))


def application_store() -> EntityStore[Application]:
    """Store for applications, in insertion order."""
    return EntityStore("applications")
