"""Wires the synchronization components together."""

import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from .api_client import RaceApiClient
from .auth import AuthGate
from .classifier import ErrorClassifier
from .config import Config
from .models import Application, Credential
from .mutations import APPLICATIONS, RACES, MutationController
from .reconcile import ReconciliationScheduler
from .retry import RetryPolicy
from .store import application_store, race_store

logger = logging.getLogger(__name__)

UNKNOWN_RACE = "unknown"

SleepFunc = Callable[[float], Awaitable[None]]


class SyncEngine:
    """Owns the stores and everything that reads or writes them.

    Presentation code subscribes to ``races`` and ``applications`` and calls
    mutations through ``mutations``.
    """

    def __init__(
        self,
        config: Config,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFunc | None = None,
    ):
        """Initialize the engine.

        Args:
            config: Loaded configuration.
            transport: Optional httpx transport for the API client.
            sleep: Awaitable sleep shared by retry, reconciliation and
                verification waits.
        """
        self.config = config
        self.classifier = ErrorClassifier()
        self.api = RaceApiClient(config.api, classifier=self.classifier, transport=transport)

        retry = RetryPolicy(
            max_attempts=config.auth.retry_attempts,
            delay=config.auth.retry_delay_seconds,
            backoff=config.auth.retry_backoff,
            classifier=self.classifier,
            sleep=sleep,
        )
        self.auth = AuthGate(self.api, retry)

        self.races = race_store()
        self.applications = application_store()
        self.auth.guard(self.races)
        self.auth.guard(self.applications)

        self.scheduler = ReconciliationScheduler(
            delay=config.sync.reconcile_delay_seconds,
            sleep=sleep,
            classifier=self.classifier,
        )
        self.scheduler.register(RACES, self.races, self.api.list_races)
        self.scheduler.register(APPLICATIONS, self.applications, self.api.list_applications)

        self.mutations = MutationController(
            api=self.api,
            races=self.races,
            applications=self.applications,
            scheduler=self.scheduler,
            auth=self.auth,
            classifier=self.classifier,
            verify_delay=config.sync.verify_delay_seconds,
            sleep=sleep,
        )

    async def login(self, email: str | None = None, role: str | None = None) -> Credential:
        """Log in (defaults from config) and load both collections."""
        credential = await self.auth.login(
            email if email is not None else self.config.auth.email,
            role if role is not None else self.config.auth.role,
        )
        await self.start()
        return credential

    def logout(self) -> None:
        """Drop the credential, cancel refreshes and empty the stores."""
        self.scheduler.cancel_all()
        self.auth.logout()

    async def start(self) -> None:
        """Initial load of both collections. No-op while logged out."""
        if not self.auth.is_authenticated:
            self.races.clear()
            self.applications.clear()
            return
        await asyncio.gather(self.refresh_races(), self.refresh_applications())

    async def refresh_races(self) -> bool:
        return await self.scheduler.refresh_now(RACES)

    async def refresh_applications(self) -> bool:
        return await self.scheduler.refresh_now(APPLICATIONS)

    async def settle(self) -> None:
        """Wait for every scheduled refresh to finish."""
        await self.scheduler.drain()

    async def close(self) -> None:
        self.scheduler.cancel_all()
        await self.scheduler.drain()

    def race_label(self, race_id: str) -> str:
        """Race name for display; dangling references render as "unknown"."""
        race = self.races.get(race_id)
        return race.name if race is not None else UNKNOWN_RACE

    def describe_application(self, application: Application) -> str:
        return (
            f"{application.first_name} {application.last_name} - "
            f"{self.race_label(application.race_id)}"
        )

    @staticmethod
    def can_modify(entity) -> bool:
        """False for entities that only exist locally so far."""
        return MutationController.can_modify(entity.id)
