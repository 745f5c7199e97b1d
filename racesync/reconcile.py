"""Deferred authoritative refreshes of local collections.

Server-side processing can lag the acknowledgment of a write, so after a
mutation the affected collection is re-fetched once, after a short delay,
and the local store is replaced wholesale with the result.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .classifier import ErrorClassifier
from .errors import SyncError
from .store import EntityStore

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]
FetchFunc = Callable[[], Awaitable[list[Any]]]


@dataclass
class _Collection:
    store: EntityStore
    fetch: FetchFunc
    last_error: SyncError | None = None


class ScheduledRefresh:
    """Handle for one deferred refresh of a collection."""

    def __init__(self, collection: str, delay: float):
        self.collection = collection
        self.delay = delay
        self.fired = False
        self._task: asyncio.Task | None = None

    def _attach(self, task: asyncio.Task) -> None:
        self._task = task

    @property
    def pending(self) -> bool:
        """Still waiting out its delay."""
        return not self.fired and not self.done()

    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def cancel(self) -> bool:
        """Cancel the refresh. Returns False if it already finished."""
        if self._task is None or self._task.done():
            return False
        return self._task.cancel()

    async def wait(self) -> bool:
        """Wait for the refresh to finish.

        Returns:
            True if the store was replaced, False if the refresh failed,
            was discarded or was cancelled.
        """
        if self._task is None:
            return False
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if self._task.cancelled():
                return False
            raise


class ReconciliationScheduler:
    """Schedules one delayed full refresh per collection at a time.

    Scheduling while a refresh is still waiting out its delay returns the
    existing handle. Once a refresh has started fetching it is never
    cancelled by a new schedule; both run and whichever result arrives last
    is what the store holds.
    """

    def __init__(
        self,
        delay: float = 1.0,
        sleep: SleepFunc | None = None,
        classifier: ErrorClassifier | None = None,
    ):
        """Initialize the scheduler.

        Args:
            delay: Default wait before a scheduled refresh, in seconds.
            sleep: Awaitable sleep, replaceable in tests.
            classifier: Classifier for fetch failures.
        """
        self.delay = delay
        self._sleep = sleep or asyncio.sleep
        self._classifier = classifier or ErrorClassifier()
        self._collections: dict[str, _Collection] = {}
        self._pending: dict[str, ScheduledRefresh] = {}
        self._handles: set[ScheduledRefresh] = set()

    def register(self, name: str, store: EntityStore, fetch: FetchFunc) -> None:
        """Register a collection that can be refreshed.

        Args:
            name: Collection name used by ``schedule``.
            store: Store replaced by each refresh.
            fetch: Coroutine function returning the authoritative listing.
        """
        self._collections[name] = _Collection(store=store, fetch=fetch)

    def _get(self, name: str) -> _Collection:
        try:
            return self._collections[name]
        except KeyError:
            raise KeyError(f"Unknown collection: {name}") from None

    def pending(self, name: str) -> ScheduledRefresh | None:
        """Refresh of ``name`` still waiting out its delay, if any."""
        handle = self._pending.get(name)
        if handle is not None and handle.pending:
            return handle
        return None

    def last_error(self, name: str) -> SyncError | None:
        return self._get(name).last_error

    def schedule(self, name: str, delay: float | None = None) -> ScheduledRefresh:
        """Refresh ``name`` after ``delay`` seconds.

        Must be called from within a running event loop.
        """
        self._get(name)
        existing = self.pending(name)
        if existing is not None:
            logger.debug(f"Refresh of '{name}' already pending")
            return existing

        handle = ScheduledRefresh(name, self.delay if delay is None else delay)
        task = asyncio.create_task(self._run(handle))
        handle._attach(task)
        self._pending[name] = handle
        self._handles.add(handle)
        task.add_done_callback(lambda _: self._handles.discard(handle))
        logger.debug(f"Scheduled refresh of '{name}' in {handle.delay:.2f}s")
        return handle

    async def _run(self, handle: ScheduledRefresh) -> bool:
        await self._sleep(handle.delay)
        handle.fired = True
        if self._pending.get(handle.collection) is handle:
            del self._pending[handle.collection]
        return await self.refresh_now(handle.collection)

    async def refresh_now(self, name: str) -> bool:
        """Fetch ``name`` and replace its store contents.

        Returns:
            True if the store was replaced. Failures are recorded as the
            collection's last error and leave the store untouched. Results
            that arrive after the store was cleared are discarded.
        """
        collection = self._get(name)
        generation = collection.store.generation
        try:
            entities = await collection.fetch()
        except Exception as e:
            error = self._classifier.classify(e)
            collection.last_error = error
            logger.warning(
                f"Refresh of '{name}' failed: {error.message}",
                extra={"collection": name, "category": error.category.value},
            )
            return False

        if collection.store.generation != generation:
            logger.debug(f"Discarding refresh of '{name}', store was reset")
            return False

        collection.store.replace_all(entities)
        collection.last_error = None
        logger.info(f"Refreshed '{name}' ({len(entities)} entries)")
        return True

    async def drain(self) -> None:
        """Wait until every scheduled refresh has finished."""
        while True:
            outstanding = [h for h in self._handles if not h.done()]
            if not outstanding:
                return
            await asyncio.gather(*(h.wait() for h in outstanding), return_exceptions=True)

    def cancel_all(self) -> None:
        """Cancel every scheduled refresh, including ones already fetching."""
        for handle in list(self._handles):
            handle.cancel()
        self._pending.clear()
