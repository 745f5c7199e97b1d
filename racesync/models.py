"""Entities mirrored from the race services."""

import random
import string
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

TEMP_ID_PREFIX = "temp-"


class Distance(Enum):
    """Race distances accepted by the command service."""

    FIVE_K = "5k"
    TEN_K = "10k"
    HALF_MARATHON = "HalfMarathon"
    MARATHON = "Marathon"

    @classmethod
    def values(cls) -> list[str]:
        return [d.value for d in cls]


class Role(Enum):
    """Roles a credential can be issued for."""

    APPLICANT = "Applicant"
    ADMINISTRATOR = "Administrator"


def new_temp_id() -> str:
    """Generate a placeholder id for an entity the server has not seen yet."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{TEMP_ID_PREFIX}{int(time.time() * 1000)}-{suffix}"


def is_temp_id(entity_id: str) -> bool:
    return entity_id.startswith(TEMP_ID_PREFIX)


@dataclass(frozen=True)
class Race:
    """A race as listed by the query service."""

    id: str
    name: str
    distance: str

    @property
    def is_temporary(self) -> bool:
        return is_temp_id(self.id)

    def patched(self, name: str | None = None, distance: str | None = None) -> "Race":
        """Return a copy with the non-None fields replaced."""
        changes: dict[str, str] = {}
        if name is not None:
            changes["name"] = name
        if distance is not None:
            changes["distance"] = distance
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "distance": self.distance}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Race":
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            distance=data.get("distance", ""),
        )


@dataclass(frozen=True)
class Application:
    """A registration of a person for a race.

    ``race_id`` is not checked against the race collection; dangling
    references are resolved to "unknown" when rendered.
    """

    id: str
    race_id: str
    first_name: str
    last_name: str
    club: str | None = None
    user_id: str | None = None
    email: str | None = None

    @property
    def is_temporary(self) -> bool:
        return is_temp_id(self.id)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "raceId": self.race_id,
            "firstName": self.first_name,
            "lastName": self.last_name,
        }
        if self.club:
            data["club"] = self.club
        if self.user_id:
            data["userId"] = self.user_id
        if self.email:
            data["email"] = self.email
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Application":
        user_id = data.get("userId")
        return cls(
            id=str(data["id"]),
            race_id=str(data.get("raceId", "")),
            first_name=data.get("firstName", ""),
            last_name=data.get("lastName", ""),
            club=data.get("club") or None,
            user_id=str(user_id) if user_id is not None else None,
            email=data.get("email"),
        )


@dataclass
class RaceDraft:
    """Input form state for creating a race."""

    name: str = ""
    distance: str = Distance.FIVE_K.value

    def clear(self) -> None:
        self.name = ""
        self.distance = Distance.FIVE_K.value


@dataclass
class ApplicationDraft:
    """Input form state for applying to a single race."""

    first_name: str = ""
    last_name: str = ""
    club: str = ""

    def clear(self) -> None:
        self.first_name = ""
        self.last_name = ""
        self.club = ""


@dataclass
class Credential:
    """A bearer token together with the identity it was issued for."""

    token: str
    email: str
    role: str
    issued_at: float = field(default_factory=time.time)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMINISTRATOR.value
