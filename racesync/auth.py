"""Credential gate for the synchronization engine."""

import logging
from typing import Any, Callable

from .api_client import RaceApiClient
from .errors import LOGIN_REQUIRED_MESSAGE, CredentialError, ValidationError
from .models import Credential, Role
from .retry import RetryPolicy
from .store import EntityStore

logger = logging.getLogger(__name__)

CredentialListener = Callable[[Credential | None], Any]


class AuthGate:
    """Holds the current credential and collapses state when it goes away.

    The gate is the token provider for RaceApiClient: authenticated calls
    made while logged out fail with CredentialError before any request is
    sent. Stores registered with ``guard`` are cleared on logout, which also
    invalidates results of requests still in flight against them.
    """

    def __init__(self, api: RaceApiClient, retry: RetryPolicy | None = None):
        self._api = api
        self._retry = retry or RetryPolicy()
        self._credential: Credential | None = None
        self._stores: list[EntityStore] = []
        self._listeners: list[CredentialListener] = []
        api.set_token_provider(self.require)

    @property
    def credential(self) -> Credential | None:
        return self._credential

    @property
    def is_authenticated(self) -> bool:
        return self._credential is not None

    @property
    def is_admin(self) -> bool:
        return self._credential is not None and self._credential.is_admin

    @property
    def token(self) -> str | None:
        return self._credential.token if self._credential else None

    def require(self) -> str:
        """Return the bearer token or raise CredentialError."""
        if self._credential is None:
            raise CredentialError(LOGIN_REQUIRED_MESSAGE)
        return self._credential.token

    def guard(self, store: EntityStore) -> None:
        """Clear ``store`` whenever the credential is dropped."""
        if store not in self._stores:
            self._stores.append(store)

    def on_change(self, listener: CredentialListener) -> None:
        self._listeners.append(listener)

    async def login(self, email: str, role: str) -> Credential:
        """Obtain a credential, retrying transient network failures.

        Raises:
            ValidationError: Empty email or unknown role.
            SyncError: Classified failure of the token request.
        """
        email = email.strip()
        if not email:
            raise ValidationError("Email is required.")
        if role not in [r.value for r in Role]:
            raise ValidationError(f"Unknown role '{role}'.")

        token = await self._retry.run(
            lambda: self._api.issue_token(email, role),
            description="Token request",
        )
        self._credential = Credential(token=token, email=email, role=role)
        logger.info(f"Logged in as {email} ({role})")
        self._notify()
        return self._credential

    def logout(self) -> None:
        """Drop the credential and empty every guarded store."""
        had_credential = self._credential is not None
        self._credential = None
        for store in self._stores:
            store.clear()
        if had_credential:
            logger.info("Logged out")
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._credential)
            except Exception as e:
                logger.error(f"Credential listener failed: {e}", exc_info=True)
