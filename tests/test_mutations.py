"""Tests for MutationController."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from racesync.auth import AuthGate
from racesync.classifier import ErrorClassifier
from racesync.errors import (
    ConflictError,
    CredentialError,
    ErrorCategory,
    RequestFailedError,
    TransientNetworkError,
    ValidationError,
)
from racesync.models import Application, ApplicationDraft, Credential, Race, RaceDraft
from racesync.mutations import (
    APPLICATIONS,
    NOT_RECORDED_MESSAGE,
    RACES,
    MutationController,
    MutationStatus,
)
from racesync.reconcile import ReconciliationScheduler

from conftest import settle


def blocking(result=None, error=None):
    """AsyncMock that resolves only once the returned event is set."""
    release = asyncio.Event()

    async def call(*args, **kwargs):
        await release.wait()
        if error is not None:
            raise error
        return result

    return release, AsyncMock(side_effect=call)


@pytest.fixture
def auth():
    auth = MagicMock(spec=AuthGate)
    auth.is_authenticated = True
    auth.credential = Credential(token="tok", email="ana@example.com", role="Applicant")
    return auth


@pytest.fixture
def scheduler(clock, api, races, applications):
    scheduler = ReconciliationScheduler(delay=1.0, sleep=clock.sleep)
    scheduler.register(RACES, races, api.list_races)
    scheduler.register(APPLICATIONS, applications, api.list_applications)
    return scheduler


@pytest.fixture
def verify_sleeps():
    return []


@pytest.fixture
def controller(api, races, applications, scheduler, auth, verify_sleeps):
    async def record_sleep(delay):
        verify_sleeps.append(delay)

    return MutationController(
        api,
        races,
        applications,
        scheduler,
        auth=auth,
        verify_delay=2.0,
        sleep=record_sleep,
    )


async def shutdown(scheduler):
    scheduler.cancel_all()
    await scheduler.drain()


def names(store):
    return [race.name for race in store.list()]


class TestCreateRace:
    """Tests for optimistic race creation."""

    @pytest.mark.asyncio
    async def test_speculative_race_shown_before_response(self, controller, api, races, scheduler):
        """Test the new race appears in sorted position while the request is pending."""
        races.upsert(Race(id="r-1", name="A Race", distance="10k"))
        release, api.create_race = blocking(result="srv-1")

        task = asyncio.create_task(controller.create_race("Z Race", "5k"))
        await settle()

        assert names(races) == ["A Race", "Z Race"]
        pending = races.list()[1]
        assert pending.id.startswith("temp-")
        assert controller.is_pending(pending.id)
        assert not controller.can_modify(pending.id)

        release.set()
        outcome = await task

        assert outcome.status is MutationStatus.CONFIRMED
        assert outcome.entity == pending
        assert races.get(pending.id) == pending
        assert not controller.is_pending(pending.id)
        api.create_race.assert_awaited_once_with("Z Race", "5k")
        await shutdown(scheduler)

    @pytest.mark.asyncio
    async def test_network_failure_rolls_back(self, controller, api, races):
        """Test a failed create removes the speculative race."""
        races.upsert(Race(id="r-1", name="A Race", distance="10k"))
        api.create_race.side_effect = httpx.ConnectError("Connection refused")

        outcome = await controller.create_race("Z Race", "5k")

        assert names(races) == ["A Race"]
        assert outcome.status is MutationStatus.ROLLED_BACK
        assert isinstance(outcome.error, TransientNetworkError)
        assert controller.last_error is outcome.error

    @pytest.mark.asyncio
    async def test_success_schedules_refresh(self, controller, api, races, clock, sample_races):
        """Test the authoritative listing replaces the speculative race later."""
        api.list_races.return_value = sample_races

        outcome = await controller.create_race("Z Race", "5k")
        assert outcome.refresh is not None
        assert outcome.refresh.pending

        await clock.advance(1.0)

        assert await outcome.refresh.wait() is True
        assert races.list() == sample_races

    @pytest.mark.asyncio
    async def test_draft_cleared_immediately(self, controller, api, scheduler):
        """Test the input form is cleared before the server answers."""
        draft = RaceDraft(name="Z Race", distance="Marathon")
        release, api.create_race = blocking(result="srv-1")

        task = asyncio.create_task(controller.create_race(draft.name, draft.distance, draft))
        await settle()

        assert draft.name == ""

        release.set()
        await task
        await shutdown(scheduler)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name,distance", [("  ", "5k"), ("Z Race", "3k")])
    async def test_invalid_input_rejected(self, controller, api, races, name, distance):
        """Test local validation happens before anything is applied."""
        outcome = await controller.create_race(name, distance)

        assert outcome.status is MutationStatus.REJECTED
        assert isinstance(outcome.error, ValidationError)
        assert len(races) == 0
        api.create_race.assert_not_called()

    @pytest.mark.asyncio
    async def test_logged_out_rejected(self, controller, api, auth):
        """Test nothing is sent without a credential."""
        auth.is_authenticated = False

        outcome = await controller.create_race("Z Race", "5k")

        assert isinstance(outcome.error, CredentialError)
        api.create_race.assert_not_called()

    @pytest.mark.asyncio
    async def test_result_discarded_after_logout(self, controller, api, races):
        """Test a late failure does not touch a store cleared meanwhile."""
        release, api.create_race = blocking(error=httpx.ConnectError("refused"))

        task = asyncio.create_task(controller.create_race("Z Race", "5k"))
        await settle()
        races.clear()
        races.upsert(Race(id="r-9", name="Fresh", distance="5k"))
        release.set()
        outcome = await task

        assert outcome.status is MutationStatus.DISCARDED
        assert outcome.error is None
        assert names(races) == ["Fresh"]
        assert controller.last_error is None


class TestUpdateRace:
    """Tests for optimistic patches."""

    @pytest.mark.asyncio
    async def test_patch_applied_then_confirmed(self, controller, api, races, sample_races, scheduler):
        """Test the patched race is shown immediately and re-sorted."""
        races.replace_all(sample_races)
        release, api.patch_race = blocking()

        task = asyncio.create_task(controller.update_race("r-1", name="Zagreb 10k"))
        await settle()

        assert names(races) == ["City Marathon", "Zagreb 10k"]
        assert controller.is_pending("r-1")

        release.set()
        outcome = await task

        assert outcome.ok
        assert races.get("r-1").distance == "10k"
        api.patch_race.assert_awaited_once_with("r-1", name="Zagreb 10k", distance=None)
        await shutdown(scheduler)

    @pytest.mark.asyncio
    async def test_failure_restores_store(self, controller, api, races, sample_races):
        """Test the store equals its pre-mutation state after a failed patch."""
        races.replace_all(sample_races)
        before = races.snapshot()
        api.patch_race.side_effect = ErrorClassifier().classify(status=403, body="")

        outcome = await controller.update_race("r-2", name="AAA", distance="5k")

        assert outcome.status is MutationStatus.ROLLED_BACK
        assert outcome.error.category is ErrorCategory.AUTHORIZATION
        assert races.snapshot() == before

    @pytest.mark.asyncio
    async def test_temporary_target_rejected(self, controller, api, races):
        """Test a race that is still being saved cannot be renamed."""
        races.upsert(Race(id="temp-1-abcdefghi", name="Pending", distance="5k"))

        outcome = await controller.update_race("temp-1-abcdefghi", name="Renamed")

        assert outcome.status is MutationStatus.REJECTED
        assert isinstance(outcome.error, ValidationError)
        assert races.get("temp-1-abcdefghi").name == "Pending"
        api.patch_race.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_race_rejected(self, controller, api):
        """Test patching a race that is not in the store."""
        outcome = await controller.update_race("r-404", name="Renamed")

        assert outcome.error.message == "Unknown race."
        api.patch_race.assert_not_called()

    @pytest.mark.asyncio
    async def test_nothing_to_update(self, controller, races, sample_races):
        """Test an empty patch is rejected."""
        races.replace_all(sample_races)

        outcome = await controller.update_race("r-1")

        assert outcome.status is MutationStatus.REJECTED

    @pytest.mark.asyncio
    async def test_second_edit_wins_locally(self, controller, api, races, sample_races, scheduler):
        """Test overlapping edits leave the later optimistic value in place."""
        races.replace_all(sample_races)
        release, api.patch_race = blocking()

        first = asyncio.create_task(controller.update_race("r-1", name="First"))
        second = asyncio.create_task(controller.update_race("r-1", name="Second"))
        await settle()

        assert races.get("r-1").name == "Second"
        release.set()
        await asyncio.gather(first, second)
        assert races.get("r-1").name == "Second"
        assert not controller.is_pending("r-1")
        await shutdown(scheduler)

    @pytest.mark.asyncio
    async def test_failed_edit_keeps_later_edit(self, controller, api, races, sample_races, scheduler):
        """Test an earlier failure does not wipe a later edit still in flight."""
        races.replace_all(sample_races)
        releases = {"First": asyncio.Event(), "Second": asyncio.Event()}
        failures = {"First": httpx.ConnectError("refused"), "Second": None}

        async def patch(race_id, name=None, distance=None):
            await releases[name].wait()
            if failures[name] is not None:
                raise failures[name]

        api.patch_race = AsyncMock(side_effect=patch)

        first = asyncio.create_task(controller.update_race("r-1", name="First"))
        second = asyncio.create_task(controller.update_race("r-1", name="Second"))
        await settle()

        releases["First"].set()
        first_outcome = await first

        assert first_outcome.status is MutationStatus.ROLLED_BACK
        assert races.get("r-1").name == "Second"
        assert controller.is_pending("r-1")

        releases["Second"].set()
        second_outcome = await second

        assert second_outcome.ok
        assert races.get("r-1").name == "Second"
        await shutdown(scheduler)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "first_error,expected",
        [(None, "First"), (httpx.ConnectError("refused"), "A Race")],
    )
    async def test_failed_later_edit_restores_accepted_value(
        self, controller, api, races, sample_races, scheduler, first_error, expected
    ):
        """Test a failed edit falls back to the last value the server accepted."""
        races.replace_all(sample_races)
        releases = {"First": asyncio.Event(), "Second": asyncio.Event()}
        failures = {"First": first_error, "Second": httpx.ConnectError("refused")}

        async def patch(race_id, name=None, distance=None):
            await releases[name].wait()
            if failures[name] is not None:
                raise failures[name]

        api.patch_race = AsyncMock(side_effect=patch)

        first = asyncio.create_task(controller.update_race("r-1", name="First"))
        second = asyncio.create_task(controller.update_race("r-1", name="Second"))
        await settle()

        releases["First"].set()
        await first
        releases["Second"].set()
        outcome = await second

        assert outcome.status is MutationStatus.ROLLED_BACK
        assert races.get("r-1").name == expected
        assert not controller.is_pending("r-1")
        await shutdown(scheduler)


class TestDelete:
    """Tests for optimistic deletes."""

    @pytest.mark.asyncio
    async def test_delete_conflict_restores(self, controller, api, races, sample_races):
        """Test a refused delete puts the race back and surfaces the server text."""
        races.replace_all(sample_races)
        before = races.snapshot()
        api.delete_race.side_effect = ErrorClassifier().classify(
            status=400, body='{"error":"Already registered"}'
        )

        outcome = await controller.delete_race("r-1")

        assert outcome.status is MutationStatus.ROLLED_BACK
        assert isinstance(outcome.error, ConflictError)
        assert "Already registered" in outcome.error.message
        assert races.snapshot() == before

    @pytest.mark.asyncio
    async def test_delete_removes_immediately(self, controller, api, races, sample_races, scheduler):
        """Test the race disappears before the server answers."""
        races.replace_all(sample_races)
        release, api.delete_race = blocking()

        task = asyncio.create_task(controller.delete_race("r-1"))
        await settle()

        assert names(races) == ["City Marathon"]

        release.set()
        outcome = await task
        assert outcome.ok
        assert outcome.entity == sample_races[0]
        assert scheduler.pending(RACES) is outcome.refresh
        await shutdown(scheduler)

    @pytest.mark.asyncio
    async def test_withdraw_restores_position(self, controller, api, applications, sample_applications):
        """Test a failed withdrawal restores the original order."""
        applications.replace_all(sample_applications)
        api.delete_application.side_effect = httpx.ReadTimeout("timed out")

        outcome = await controller.delete_application("a-1")

        assert outcome.status is MutationStatus.ROLLED_BACK
        assert applications.ids() == ["a-1", "a-2"]

    @pytest.mark.asyncio
    async def test_temporary_application_cannot_be_withdrawn(self, controller, api):
        """Test temp-prefixed applications are never delete targets."""
        outcome = await controller.delete_application("temp-1-abcdefghi")

        assert outcome.status is MutationStatus.REJECTED
        api.delete_application.assert_not_called()

    @pytest.mark.asyncio
    async def test_error_listener_notified(self, controller, api, races, sample_races):
        """Test listeners receive the surfaced error."""
        races.replace_all(sample_races)
        api.delete_race.side_effect = httpx.ConnectError("refused")
        seen = []
        controller.on_error(seen.append)

        outcome = await controller.delete_race("r-2")

        assert seen == [outcome.error]


class TestRegister:
    """Tests for the write-then-verify registration flow."""

    @pytest.mark.asyncio
    async def test_verified_registration(self, controller, api, applications, verify_sleeps):
        """Test the registration is confirmed once the read-back shows it."""
        recorded = Application(
            id="a-9",
            race_id="r-1",
            first_name="Ana",
            last_name="Horvat",
            user_id="u-1",
            email="ana@example.com",
        )
        api.list_applications.return_value = [recorded]
        draft = ApplicationDraft(first_name="Ana", last_name="Horvat", club="")

        outcome = await controller.register("r-1", "Ana", "Horvat", draft=draft)

        assert outcome.status is MutationStatus.CONFIRMED
        assert outcome.entity == recorded
        assert applications.list() == [recorded]
        assert verify_sleeps == [2.0]
        assert draft.first_name == ""
        api.create_application.assert_awaited_once_with("r-1", "Ana", "Horvat", None)

    @pytest.mark.asyncio
    async def test_missing_after_write_is_failure(self, controller, api, applications):
        """Test an accepted write that does not show up is reported as failed."""
        api.list_applications.return_value = []

        outcome = await controller.register("r-1", "Ana", "Horvat")

        assert outcome.status is MutationStatus.UNVERIFIED
        assert isinstance(outcome.error, RequestFailedError)
        assert outcome.error.message == NOT_RECORDED_MESSAGE
        assert applications.list() == []

    @pytest.mark.asyncio
    async def test_other_requester_does_not_match(self, controller, api):
        """Test an application by someone else for the same race is not a match."""
        api.list_applications.return_value = [
            Application(
                id="a-3",
                race_id="r-1",
                first_name="Ana",
                last_name="Horvat",
                email="other@example.com",
            )
        ]

        outcome = await controller.register("r-1", "Ana", "Horvat")

        assert outcome.status is MutationStatus.UNVERIFIED

    @pytest.mark.asyncio
    async def test_speculative_application_shown(self, controller, api, applications):
        """Test the pending application is visible while the write is in flight."""
        release, api.create_application = blocking(error=httpx.ConnectError("refused"))
        draft = ApplicationDraft(first_name="Ana", last_name="Horvat", club="AK")

        task = asyncio.create_task(
            controller.register("r-1", "Ana", "Horvat", club="AK", draft=draft)
        )
        await settle()

        pending = applications.list()
        assert len(pending) == 1
        assert pending[0].is_temporary
        assert pending[0].club == "AK"
        assert controller.is_pending("r-1")

        release.set()
        outcome = await task

        assert outcome.status is MutationStatus.ROLLED_BACK
        assert applications.list() == []
        assert draft.first_name == "Ana"
        api.list_applications.assert_not_called()

    @pytest.mark.asyncio
    async def test_duplicate_registration_warning(self, controller, api):
        """Test a duplicate registration is a warning-toned conflict."""
        api.create_application.side_effect = ErrorClassifier().classify(
            status=400, body={"error": "Already registered"}
        )

        outcome = await controller.register("r-1", "Ana", "Horvat")

        assert outcome.error.category is ErrorCategory.CONFLICT
        assert outcome.error.tone.value == "warning"

    @pytest.mark.asyncio
    async def test_read_back_failure_schedules_refresh(self, controller, api, applications, scheduler):
        """Test an unreachable read-back leaves the outcome unverified."""
        api.list_applications.side_effect = httpx.ConnectError("refused")

        outcome = await controller.register("r-1", "Ana", "Horvat")

        assert outcome.status is MutationStatus.UNVERIFIED
        assert outcome.error.category is ErrorCategory.TRANSIENT_NETWORK
        assert applications.list() == []
        assert scheduler.pending(APPLICATIONS) is not None
        await shutdown(scheduler)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("first,last", [("", "Horvat"), ("Ana", "  ")])
    async def test_names_required(self, controller, api, first, last):
        """Test both names are required."""
        outcome = await controller.register("r-1", first, last)

        assert outcome.error.message == "First/Last name required."
        api.create_application.assert_not_called()

    @pytest.mark.asyncio
    async def test_temporary_race_rejected(self, controller, api):
        """Test applying for a race that is still being saved."""
        outcome = await controller.register("temp-1-abcdefghi", "Ana", "Horvat")

        assert outcome.status is MutationStatus.REJECTED
        api.create_application.assert_not_called()


@pytest.mark.asyncio
async def test_rollback_leaves_store_unchanged_for_every_mutation(
    controller, api, races, applications, sample_races, sample_applications
):
    """Test every failing mutation leaves both stores as they were."""
    races.replace_all(sample_races)
    applications.replace_all(sample_applications)
    failure = httpx.ConnectError("refused")
    for mock in (
        api.create_race,
        api.patch_race,
        api.delete_race,
        api.create_application,
        api.delete_application,
    ):
        mock.side_effect = failure

    before = (races.snapshot(), applications.snapshot())
    outcomes = [
        await controller.create_race("New", "5k"),
        await controller.update_race("r-2", distance="10k"),
        await controller.delete_race("r-1"),
        await controller.register("r-2", "Ana", "Horvat"),
        await controller.delete_application("a-2"),
    ]

    assert all(o.status is MutationStatus.ROLLED_BACK for o in outcomes)
    assert (races.snapshot(), applications.snapshot()) == before
