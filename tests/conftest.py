"""Shared fixtures for racesync tests."""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from racesync.api_client import RaceApiClient
from racesync.models import Application, Race
from racesync.store import application_store, race_store


class ManualClock:
    """Replacement for asyncio.sleep whose waits end only when advanced."""

    def __init__(self):
        self.now = 0.0
        self.calls: list[float] = []
        self._waiters: list[tuple[float, asyncio.Future]] = []

    async def sleep(self, delay: float) -> None:
        self.calls.append(delay)
        future = asyncio.get_running_loop().create_future()
        self._waiters.append((self.now + delay, future))
        await future

    @property
    def waiting(self) -> int:
        return sum(1 for _, f in self._waiters if not f.done())

    async def advance(self, seconds: float) -> None:
        """Move time forward and let woken tasks run."""
        await settle()
        self.now += seconds
        remaining = []
        for deadline, future in self._waiters:
            if deadline <= self.now + 1e-9:
                if not future.done():
                    future.set_result(None)
            else:
                remaining.append((deadline, future))
        self._waiters = remaining
        await settle()


async def settle(rounds: int = 20) -> None:
    """Give pending tasks a chance to run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def races():
    return race_store()


@pytest.fixture
def applications():
    return application_store()


@pytest.fixture
def sample_races():
    return [
        Race(id="r-1", name="A Race", distance="10k"),
        Race(id="r-2", name="City Marathon", distance="Marathon"),
    ]


@pytest.fixture
def sample_applications():
    return [
        Application(
            id="a-1",
            race_id="r-1",
            first_name="Ana",
            last_name="Horvat",
            email="ana@example.com",
        ),
        Application(
            id="a-2",
            race_id="r-2",
            first_name="Ivo",
            last_name="Kovac",
            club="AK Zagreb",
            email="ivo@example.com",
        ),
    ]


@pytest.fixture
def api():
    """RaceApiClient double with every call succeeding."""
    api = MagicMock(spec=RaceApiClient)
    api.issue_token = AsyncMock(return_value="token-123")
    api.list_races = AsyncMock(return_value=[])
    api.create_race = AsyncMock(return_value="srv-1")
    api.patch_race = AsyncMock(return_value=None)
    api.delete_race = AsyncMock(return_value=None)
    api.list_applications = AsyncMock(return_value=[])
    api.create_application = AsyncMock(return_value="app-1")
    api.delete_application = AsyncMock(return_value=None)
    return api


@pytest.fixture
def restore_logging():
    """Undo handler and level changes made by setup_logging."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    library_levels = {name: logging.getLogger(name).level for name in ("httpx", "httpcore")}
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    for name, library_level in library_levels.items():
        logging.getLogger(name).setLevel(library_level)
