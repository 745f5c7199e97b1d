"""Optimistic create/update/delete of races and applications.

Every mutation follows the same sequence: validate locally, apply the
speculative change to the store, issue the request, then either confirm
(and schedule a reconciliation refresh) or roll the store back and surface a
classified error. The optimistic apply always happens before the request is
sent; rollback and confirmation always happen after it resolves.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from .api_client import RaceApiClient
from .auth import AuthGate
from .classifier import ErrorClassifier
from .errors import (
    LOGIN_REQUIRED_MESSAGE,
    CredentialError,
    RequestFailedError,
    SyncError,
    ValidationError,
)
from .models import (
    Application,
    ApplicationDraft,
    Distance,
    Race,
    RaceDraft,
    is_temp_id,
    new_temp_id,
)
from .reconcile import ReconciliationScheduler, ScheduledRefresh
from .store import EntityStore

logger = logging.getLogger(__name__)

RACES = "races"
APPLICATIONS = "applications"

NOT_RECORDED_MESSAGE = "Your application was not recorded. Please try again."

ErrorListener = Callable[[SyncError], Any]
SleepFunc = Callable[[float], Awaitable[None]]


class MutationStatus(Enum):
    """How a mutation ended."""

    CONFIRMED = "confirmed"  # Server accepted, refresh scheduled
    ROLLED_BACK = "rolled_back"  # Server refused, store restored
    REJECTED = "rejected"  # Failed local checks, nothing sent
    DISCARDED = "discarded"  # Store was reset while the request was pending
    UNVERIFIED = "unverified"  # Write accepted but not visible on read-back


@dataclass
class MutationOutcome:
    """Result of a mutation."""

    status: MutationStatus
    entity: Any = None
    error: SyncError | None = None
    refresh: ScheduledRefresh | None = None

    @property
    def ok(self) -> bool:
        return self.status == MutationStatus.CONFIRMED


class MutationController:
    """Applies optimistic changes to the local stores."""

    def __init__(
        self,
        api: RaceApiClient,
        races: EntityStore[Race],
        applications: EntityStore[Application],
        scheduler: ReconciliationScheduler,
        auth: AuthGate | None = None,
        classifier: ErrorClassifier | None = None,
        verify_delay: float = 2.0,
        sleep: SleepFunc | None = None,
    ):
        """Initialize the controller.

        Args:
            api: REST client.
            races: Race store.
            applications: Application store.
            scheduler: Scheduler with RACES and APPLICATIONS registered.
            auth: Credential gate; mutations are rejected while logged out.
            classifier: Classifier for unexpected failures.
            verify_delay: Wait before the registration read-back, in seconds.
            sleep: Awaitable sleep, replaceable in tests.
        """
        self._api = api
        self.races = races
        self.applications = applications
        self._scheduler = scheduler
        self._auth = auth
        self._classifier = classifier or ErrorClassifier()
        self.verify_delay = verify_delay
        self._sleep = sleep or asyncio.sleep
        self._in_flight: Counter[str] = Counter()
        # Last server-accepted value per race while updates of it overlap
        self._accepted: dict[str, Race] = {}
        self._error_listeners: list[ErrorListener] = []
        self.last_error: SyncError | None = None

    def on_error(self, listener: ErrorListener) -> None:
        """Register for classified errors surfaced by failed mutations."""
        self._error_listeners.append(listener)

    def is_pending(self, entity_id: str) -> bool:
        """Whether a mutation of ``entity_id`` is awaiting the server."""
        return self._in_flight[entity_id] > 0

    @staticmethod
    def can_modify(entity_id: str) -> bool:
        """Rename/delete are only possible once the server assigned an id."""
        return not is_temp_id(entity_id)

    # Races

    async def create_race(
        self,
        name: str,
        distance: str,
        draft: RaceDraft | None = None,
    ) -> MutationOutcome:
        """Create a race optimistically.

        The speculative race keeps its temporary id until the scheduled
        refresh replaces the collection with the server's listing.

        Args:
            name: Race name.
            distance: One of the Distance values.
            draft: Input form to clear once the race is shown.
        """
        self.last_error = None
        name = name.strip()
        try:
            self._check_auth()
            self._check_name(name, "Race name")
            self._check_distance(distance)
        except (ValidationError, CredentialError) as e:
            return self._reject(e)

        race = Race(id=new_temp_id(), name=name, distance=distance)
        generation = self.races.generation
        self.races.upsert(race)
        if draft is not None:
            draft.clear()

        self._in_flight[race.id] += 1
        try:
            await self._api.create_race(name, distance)
        except Exception as e:
            if self.races.generation != generation:
                return self._discard("create race")
            self.races.remove(race.id)
            return self._rollback(e, "create race")
        finally:
            self._done(race.id)

        if self.races.generation != generation:
            return self._discard("create race")
        logger.info(f"Race '{name}' created")
        return self._confirm(RACES, race)

    async def update_race(
        self,
        race_id: str,
        name: str | None = None,
        distance: str | None = None,
    ) -> MutationOutcome:
        """Patch a race optimistically and restore it if the server refuses.

        With overlapping updates of one race, a failed update only reverts
        the store if its own value is still shown, and then to the last value
        the server accepted.
        """
        self.last_error = None
        if name is not None:
            name = name.strip()
        try:
            self._check_auth()
            self._check_target(race_id, "Race")
            current = self.races.get(race_id)
            if current is None:
                raise ValidationError("Unknown race.")
            if name is None and distance is None:
                raise ValidationError("Nothing to update.")
            if name is not None:
                self._check_name(name, "Race name")
            if distance is not None:
                self._check_distance(distance)
        except (ValidationError, CredentialError) as e:
            return self._reject(e)

        patched = current.patched(name=name, distance=distance)
        generation = self.races.generation
        self._accepted.setdefault(race_id, current)
        self.races.upsert(patched)

        self._in_flight[race_id] += 1
        try:
            await self._api.patch_race(race_id, name=name, distance=distance)
            self._accepted[race_id] = patched
        except Exception as e:
            if self.races.generation != generation:
                return self._discard("update race")
            # A later edit still on screen is left for its own outcome
            if self.races.get(race_id) == patched:
                self.races.upsert(self._accepted[race_id])
            return self._rollback(e, "update race")
        finally:
            self._done(race_id)
            if not self.is_pending(race_id):
                self._accepted.pop(race_id, None)

        if self.races.generation != generation:
            return self._discard("update race")
        logger.info(f"Race {race_id} updated")
        return self._confirm(RACES, patched)

    async def delete_race(self, race_id: str) -> MutationOutcome:
        """Delete a race optimistically and restore it if the server refuses."""
        return await self._delete(
            self.races, RACES, race_id, "Race", self._api.delete_race
        )

    # Applications

    async def delete_application(self, application_id: str) -> MutationOutcome:
        """Withdraw an application optimistically."""
        return await self._delete(
            self.applications,
            APPLICATIONS,
            application_id,
            "Application",
            self._api.delete_application,
        )

    async def register(
        self,
        race_id: str,
        first_name: str,
        last_name: str,
        club: str | None = None,
        draft: ApplicationDraft | None = None,
    ) -> MutationOutcome:
        """Apply for a race and verify the application became visible.

        A successful write is only provisional. After ``verify_delay`` the
        caller's applications are re-read; if no application for this race
        and requester shows up, the registration is reported as failed even
        though the write was accepted.

        Args:
            race_id: Race to apply for.
            first_name: Applicant first name.
            last_name: Applicant last name.
            club: Optional club.
            draft: Per-race input form, cleared once the write is accepted.
        """
        self.last_error = None
        first_name = first_name.strip()
        last_name = last_name.strip()
        club = club.strip() if club else None
        try:
            self._check_auth()
            if not first_name or not last_name:
                raise ValidationError("First/Last name required.")
            self._check_target(race_id, "Race")
        except (ValidationError, CredentialError) as e:
            return self._reject(e)

        requester = self._requester_email()
        pending = Application(
            id=new_temp_id(),
            race_id=race_id,
            first_name=first_name,
            last_name=last_name,
            club=club or None,
            email=requester,
        )
        generation = self.applications.generation
        self.applications.upsert(pending)

        self._in_flight[race_id] += 1
        try:
            try:
                await self._api.create_application(race_id, first_name, last_name, club)
            except Exception as e:
                if self.applications.generation != generation:
                    return self._discard("register")
                self.applications.remove(pending.id)
                return self._rollback(e, "register")

            if draft is not None:
                draft.clear()

            await self._sleep(self.verify_delay)
            if self.applications.generation != generation:
                return self._discard("register")

            try:
                listing = await self._api.list_applications()
            except Exception as e:
                if self.applications.generation != generation:
                    return self._discard("register")
                self.applications.remove(pending.id)
                error = self._classifier.classify(e)
                logger.warning(f"Registration read-back failed: {error.message}")
                self._scheduler.schedule(APPLICATIONS)
                return self._surface(error, MutationStatus.UNVERIFIED)

            if self.applications.generation != generation:
                return self._discard("register")
            self.applications.replace_all(listing)
        finally:
            self._done(race_id)

        match = self._find_application(listing, race_id, first_name, last_name, requester)
        if match is None:
            logger.warning(
                f"Application for race {race_id} accepted but not found on read-back"
            )
            return self._surface(
                RequestFailedError(NOT_RECORDED_MESSAGE), MutationStatus.UNVERIFIED
            )

        logger.info(f"Application {match.id} for race {race_id} verified")
        return MutationOutcome(status=MutationStatus.CONFIRMED, entity=match)

    # Shared steps

    async def _delete(
        self,
        store: EntityStore,
        collection: str,
        entity_id: str,
        label: str,
        request: Callable[[str], Awaitable[None]],
    ) -> MutationOutcome:
        self.last_error = None
        try:
            self._check_auth()
            self._check_target(entity_id, label)
        except (ValidationError, CredentialError) as e:
            return self._reject(e)

        ids = store.ids()
        position = ids.index(entity_id) if entity_id in ids else None
        snapshot = store.get(entity_id)
        generation = store.generation
        store.remove(entity_id)

        action = f"delete {label.lower()}"
        self._in_flight[entity_id] += 1
        try:
            await request(entity_id)
        except Exception as e:
            if store.generation != generation:
                return self._discard(action)
            if snapshot is not None:
                store.upsert(snapshot, position=position)
            return self._rollback(e, action)
        finally:
            self._done(entity_id)

        if store.generation != generation:
            return self._discard(action)
        logger.info(f"{label} {entity_id} deleted")
        return self._confirm(collection, snapshot)

    def _check_auth(self) -> None:
        if self._auth is not None and not self._auth.is_authenticated:
            raise CredentialError(LOGIN_REQUIRED_MESSAGE)

    @staticmethod
    def _check_name(name: str, label: str) -> None:
        if not name:
            raise ValidationError(f"{label} is required.")

    @staticmethod
    def _check_distance(distance: str) -> None:
        if distance not in Distance.values():
            raise ValidationError(
                f"Invalid distance '{distance}', expected one of {', '.join(Distance.values())}."
            )

    @staticmethod
    def _check_target(entity_id: str, label: str) -> None:
        if is_temp_id(entity_id):
            raise ValidationError(f"{label} is still being saved.")

    def _requester_email(self) -> str | None:
        if self._auth is not None and self._auth.credential is not None:
            return self._auth.credential.email
        return None

    @staticmethod
    def _find_application(
        listing: list[Application],
        race_id: str,
        first_name: str,
        last_name: str,
        email: str | None,
    ) -> Application | None:
        for application in listing:
            if application.is_temporary or application.race_id != race_id:
                continue
            if email and application.email:
                if application.email.lower() == email.lower():
                    return application
                continue
            if (
                application.first_name.lower() == first_name.lower()
                and application.last_name.lower() == last_name.lower()
            ):
                return application
        return None

    def _done(self, entity_id: str) -> None:
        self._in_flight[entity_id] -= 1
        if self._in_flight[entity_id] <= 0:
            del self._in_flight[entity_id]

    def _confirm(self, collection: str, entity: Any) -> MutationOutcome:
        refresh = self._scheduler.schedule(collection)
        return MutationOutcome(
            status=MutationStatus.CONFIRMED, entity=entity, refresh=refresh
        )

    def _reject(self, error: SyncError) -> MutationOutcome:
        return self._surface(error, MutationStatus.REJECTED)

    def _rollback(self, exc: Exception, action: str) -> MutationOutcome:
        error = self._classifier.classify(exc)
        logger.warning(
            f"Rolled back {action}: {error.message}",
            extra={"category": error.category.value, "status": error.status},
        )
        return self._surface(error, MutationStatus.ROLLED_BACK)

    def _discard(self, action: str) -> MutationOutcome:
        logger.debug(f"Discarded result of {action}, store was reset")
        return MutationOutcome(status=MutationStatus.DISCARDED)

    def _surface(self, error: SyncError, status: MutationStatus) -> MutationOutcome:
        self.last_error = error
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception as e:
                logger.error(f"Error listener failed: {e}", exc_info=True)
        return MutationOutcome(status=status, error=error)
