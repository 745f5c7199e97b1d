"""Async REST client for the race query and command services.

Reads go to the query service, writes and credential issuance to the
command service. Every failure leaves this module as a classified
SyncError.
"""

import logging
from typing import Any, Callable, Iterable, TypeVar

import httpx

from .classifier import ErrorClassifier
from .config import ApiConfig
from .errors import LOGIN_REQUIRED_MESSAGE, CredentialError, SyncError
from .models import Application, Race

logger = logging.getLogger(__name__)

T = TypeVar("T")

TokenProvider = Callable[[], str]

QUERY = "query"
COMMAND = "command"

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


class RaceApiClient:
    """Client for the race registration REST API."""

    def __init__(
        self,
        config: ApiConfig,
        token_provider: TokenProvider | None = None,
        classifier: ErrorClassifier | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            config: Service URLs and timeout.
            token_provider: Returns the bearer token for authenticated calls.
                Expected to raise CredentialError when no credential exists.
            classifier: Classifier for failed calls.
            transport: Optional httpx transport (tests use MockTransport).
        """
        self.config = config
        self._token_provider = token_provider
        self._classifier = classifier or ErrorClassifier()
        self._transport = transport

    def set_token_provider(self, provider: TokenProvider) -> None:
        self._token_provider = provider

    def _base_url(self, service: str) -> str:
        if service == QUERY:
            return self.config.query_url.rstrip("/")
        return self.config.command_url.rstrip("/")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.config.timeout_seconds,
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        service: str,
        path: str,
        json_data: Any = None,
        ok_statuses: Iterable[int] = (200,),
        authenticated: bool = True,
    ) -> Any:
        """Make an HTTP request and return the decoded JSON body.

        Args:
            method: HTTP method.
            service: QUERY or COMMAND.
            path: Path appended to the service base URL.
            json_data: Optional JSON body.
            ok_statuses: Status codes treated as success.
            authenticated: Send the bearer token.

        Returns:
            Parsed JSON, or None for empty bodies.

        Raises:
            SyncError: On transport failure, unexpected status or a body
                that is not valid JSON.
        """
        url = f"{self._base_url(service)}{path}"
        headers: dict[str, str] = {}
        if authenticated:
            if self._token_provider is None:
                raise CredentialError(LOGIN_REQUIRED_MESSAGE)
            headers["Authorization"] = f"Bearer {self._token_provider()}"
        if method in MUTATING_METHODS:
            headers["Content-Type"] = "application/json"

        logger.debug(f"{method} {url}")
        try:
            async with self._client() as client:
                response = await client.request(
                    method, url, json=json_data, headers=headers
                )
        except httpx.TransportError as e:
            logger.warning(f"{method} {url} failed: {type(e).__name__}: {e}")
            raise self._classifier.classify(exc=e) from e

        if response.status_code not in ok_statuses:
            error = self._classifier.classify_response(response)
            logger.warning(
                f"{method} {url} returned {response.status_code}: "
                f"{error.category.value} ({error.message})"
            )
            raise error

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            logger.warning(f"{method} {url} returned a malformed body")
            raise self._classifier.classify(exc=e, status=response.status_code) from e

    def _malformed(self, reason: str) -> SyncError:
        return self._classifier.classify(exc=ValueError(reason))

    def _parse_list(self, data: Any, factory: Callable[[dict], T], what: str) -> list[T]:
        if not isinstance(data, list):
            raise self._malformed(f"expected a list of {what}")
        try:
            return [factory(item) for item in data]
        except (KeyError, TypeError, AttributeError) as e:
            raise self._malformed(f"invalid {what} entry: {e}") from e

    @staticmethod
    def _created_id(data: Any) -> str | None:
        if isinstance(data, dict) and data.get("id") is not None:
            return str(data["id"])
        return None

    async def issue_token(self, email: str, role: str) -> str:
        """Request a bearer token for ``email`` acting as ``role``."""
        data = await self._request(
            "POST",
            COMMAND,
            "/auth/token",
            json_data={"email": email, "role": role},
            authenticated=False,
        )
        if not isinstance(data, dict) or not isinstance(data.get("token"), str):
            raise self._malformed("token response without a token")
        return data["token"]

    async def list_races(self) -> list[Race]:
        data = await self._request("GET", QUERY, "/api/v1/races")
        return self._parse_list(data, Race.from_dict, "races")

    async def create_race(self, name: str, distance: str) -> str | None:
        """Create a race.

        Returns:
            The server-assigned id, if the response carried one.
        """
        data = await self._request(
            "POST",
            COMMAND,
            "/api/v1/races",
            json_data={"name": name, "distance": distance},
            ok_statuses=(200, 201),
        )
        return self._created_id(data)

    async def patch_race(
        self,
        race_id: str,
        name: str | None = None,
        distance: str | None = None,
    ) -> None:
        patch: dict[str, str] = {}
        if name is not None:
            patch["name"] = name
        if distance is not None:
            patch["distance"] = distance
        await self._request("PATCH", COMMAND, f"/api/v1/races/{race_id}", json_data=patch)

    async def delete_race(self, race_id: str) -> None:
        await self._request(
            "DELETE", COMMAND, f"/api/v1/races/{race_id}", ok_statuses=(200, 204)
        )

    async def list_applications(self) -> list[Application]:
        """List applications visible to the caller (all of them for admins)."""
        data = await self._request("GET", QUERY, "/api/v1/applications")
        return self._parse_list(data, Application.from_dict, "applications")

    async def create_application(
        self,
        race_id: str,
        first_name: str,
        last_name: str,
        club: str | None = None,
    ) -> str | None:
        """Submit an application for a race.

        The command service may accept the request before the application
        is visible through the query service.

        Returns:
            The server-assigned id, if the response carried one.
        """
        payload: dict[str, str] = {
            "firstName": first_name,
            "lastName": last_name,
            "raceId": race_id,
        }
        if club:
            payload["club"] = club
        data = await self._request(
            "POST",
            COMMAND,
            "/api/v1/applications",
            json_data=payload,
            ok_statuses=(200, 201, 202),
        )
        return self._created_id(data)

    async def delete_application(self, application_id: str) -> None:
        await self._request(
            "DELETE",
            COMMAND,
            f"/api/v1/applications/{application_id}",
            ok_statuses=(200, 202, 204),
        )

    async def check_connection(self, service: str) -> bool:
        """Check whether a service answers HTTP at all."""
        try:
            async with self._client() as client:
                await client.get(f"{self._base_url(service)}/")
            return True
        except httpx.HTTPError:
            return False
