"""Turns failed calls into categorized, user-facing errors.

Classification order:

1. Structured error text in the response body. The ordered rule table is
   matched against it; the first matching rule picks the category (and may
   override the message). Without a match the text itself becomes the
   message and the status code picks the category.
2. Status code defaults (401, 403, 5xx).
3. A generic failure message.

Network failures (no response at all) are always transient.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

import httpx

from .errors import ErrorCategory, SyncError, error_for

logger = logging.getLogger(__name__)

NETWORK_MESSAGE = "Could not reach the server. Please try again."
MALFORMED_MESSAGE = "Received an unexpected response from the server."
GENERIC_MESSAGE = "Request failed. Please try again."

STATUS_DEFAULTS: dict[int, tuple[ErrorCategory, str]] = {
    401: (ErrorCategory.CREDENTIAL, "Your credentials were not accepted."),
    403: (ErrorCategory.AUTHORIZATION, "You do not have permission to do that."),
}
SERVER_ERROR_DEFAULT = (
    ErrorCategory.SERVER,
    "The service is temporarily unavailable. Please try again later.",
)

# Body keys that carry error text, in order of preference
ERROR_TEXT_KEYS = ("message", "error", "detail")


@dataclass
class ClassificationRule:
    """Maps error text matching ``pattern`` to a category.

    Attributes:
        pattern: Case-insensitive regular expression searched in the text.
        category: Category assigned on match.
        status: Only apply when the response had this status code.
        message: Replacement message. None keeps the server's text.
    """

    pattern: str
    category: ErrorCategory
    status: int | None = None
    message: str | None = None
    _regex: re.Pattern = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._regex = re.compile(self.pattern, re.IGNORECASE)

    def matches(self, text: str, status: int | None) -> bool:
        if self.status is not None and self.status != status:
            return False
        return self._regex.search(text) is not None


DEFAULT_RULES: list[ClassificationRule] = [
    ClassificationRule(r"already\s+(registered|applied)", ErrorCategory.CONFLICT),
    ClassificationRule(r"duplicate", ErrorCategory.CONFLICT),
    ClassificationRule(
        r"(user|account)\s+not\s+found|no\s+(such\s+)?account|unknown\s+user",
        ErrorCategory.CREDENTIAL,
        status=401,
        message="Account not found.",
    ),
    ClassificationRule(
        r"\brole\b",
        ErrorCategory.CREDENTIAL,
        status=401,
        message="Wrong role for this account.",
    ),
]


def extract_error_text(body: Any, status: int | None = None) -> str | None:
    """Pull a human-readable error message out of a response body.

    Args:
        body: Parsed JSON, raw response text, or None.
        status: Status code; a bare reason phrase such as "Bad Request" is
            not treated as error text.

    Returns:
        The message, or None if the body carries none.
    """
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")

    if isinstance(body, str):
        stripped = body.strip()
        if not stripped:
            return None
        try:
            body = json.loads(stripped)
        except ValueError:
            # Plain text bodies are usually proxy or HTML error pages
            return None

    text = None
    if isinstance(body, dict):
        for key in ERROR_TEXT_KEYS:
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                text = value.strip()
                break
    elif isinstance(body, str) and body.strip():
        text = body.strip()

    if text is None:
        return None
    if status is not None and text.lower() == httpx.codes.get_reason_phrase(status).lower():
        return None
    return text


class ErrorClassifier:
    """Ordered, extensible rule table for error classification."""

    def __init__(self, rules: Iterable[ClassificationRule] | None = None):
        """Initialize the classifier.

        Args:
            rules: Rules to check in order. Defaults to DEFAULT_RULES.
        """
        self.rules = list(DEFAULT_RULES if rules is None else rules)

    def add_rule(self, rule: ClassificationRule, first: bool = False) -> None:
        """Append a rule, or put it ahead of all others with ``first``."""
        if first:
            self.rules.insert(0, rule)
        else:
            self.rules.append(rule)

    def classify(
        self,
        exc: BaseException | None = None,
        status: int | None = None,
        body: Any = None,
    ) -> SyncError:
        """Classify a failure.

        Args:
            exc: Exception raised by the call, if any.
            status: HTTP status code, if a response was received.
            body: Response body (raw text or parsed JSON).

        Returns:
            A SyncError subclass instance. Already classified errors are
            returned unchanged.
        """
        if isinstance(exc, SyncError):
            return exc

        if isinstance(exc, httpx.TransportError):
            return error_for(
                ErrorCategory.TRANSIENT_NETWORK,
                NETWORK_MESSAGE,
                detail=f"{type(exc).__name__}: {exc}",
            )

        if isinstance(exc, ValueError):
            return error_for(
                ErrorCategory.GENERIC,
                MALFORMED_MESSAGE,
                status=status,
                detail=str(exc),
            )

        text = extract_error_text(body, status)
        if text:
            for rule in self.rules:
                if rule.matches(text, status):
                    return error_for(
                        rule.category,
                        rule.message or text,
                        status=status,
                        detail=text,
                    )
            category = self._category_for_status(status) or ErrorCategory.GENERIC
            return error_for(category, text, status=status, detail=text)

        default = self._default_for_status(status)
        if default:
            category, message = default
            return error_for(category, message, status=status)

        detail = str(exc) if exc is not None else None
        return error_for(ErrorCategory.GENERIC, GENERIC_MESSAGE, status=status, detail=detail)

    def classify_response(self, response: httpx.Response) -> SyncError:
        """Classify an unsuccessful HTTP response."""
        return self.classify(status=response.status_code, body=response.text)

    def _default_for_status(self, status: int | None) -> tuple[ErrorCategory, str] | None:
        if status is None:
            return None
        if status in STATUS_DEFAULTS:
            return STATUS_DEFAULTS[status]
        if status >= 500:
            return SERVER_ERROR_DEFAULT
        return None

    def _category_for_status(self, status: int | None) -> ErrorCategory | None:
        default = self._default_for_status(status)
        return default[0] if default else None
