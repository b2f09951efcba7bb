"""Newsletter subscription parsing, classification and recording.

Nothing here knows about HTTP framing: the gate hands over a content type
and a raw body string and gets back a tagged classification.
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from urllib.parse import parse_qs

from edge.app.core.logging import get_log_context, get_logger
from edge.app.exceptions import UnsupportedMediaTypeError

logger = get_logger(__name__)

JSON_CONTENT_TYPE = "application/json"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

EMAIL_FIELD = "email"
HONEYPOT_FIELD = "website"

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]{2,}$")


def is_valid_email(email: str) -> bool:
    """Check address syntax: local@domain.tld with a TLD of 2+ characters."""
    return EMAIL_PATTERN.fullmatch(email) is not None


def is_supported_content_type(content_type: Optional[str]) -> bool:
    ct = (content_type or "").lower()
    return JSON_CONTENT_TYPE in ct or FORM_CONTENT_TYPE in ct


@dataclass(frozen=True)
class SubscriptionRequest:
    """Fields submitted by the sign-up form."""
    email: str = ""
    honeypot: str = ""


def _field_text(value: object) -> str:
    # false, 0, null and "" all mean the field was left empty
    if not value:
        return ""
    return str(value).strip()


def parse_subscription(content_type: Optional[str], raw: str) -> SubscriptionRequest:
    """Extract email and honeypot from a JSON or URL-encoded body.

    Raises:
        UnsupportedMediaTypeError: content type is missing or not supported
        json.JSONDecodeError: body claims JSON but is malformed
    """
    ct = (content_type or "").lower()

    if JSON_CONTENT_TYPE in ct:
        data = json.loads(raw or "{}")
        if not isinstance(data, dict):
            data = {}
        return SubscriptionRequest(
            email=_field_text(data.get(EMAIL_FIELD)),
            honeypot=_field_text(data.get(HONEYPOT_FIELD)),
        )

    if FORM_CONTENT_TYPE in ct:
        params = parse_qs(raw or "", keep_blank_values=True)
        return SubscriptionRequest(
            email=_field_text(params.get(EMAIL_FIELD, [""])[0]),
            honeypot=_field_text(params.get(HONEYPOT_FIELD, [""])[0]),
        )

    raise UnsupportedMediaTypeError()


class SubscriptionOutcome(str, Enum):
    ACCEPTED = "accepted"
    HONEYPOT = "honeypot"
    INVALID = "invalid"


@dataclass(frozen=True)
class Classification:
    outcome: SubscriptionOutcome
    email: str = ""


def classify_subscription(request: SubscriptionRequest) -> Classification:
    """Decide what to do with a parsed submission.

    A filled honeypot wins over everything else: the submission is neither
    validated nor recorded, and the email is dropped.
    """
    if request.honeypot:
        return Classification(SubscriptionOutcome.HONEYPOT)

    email = request.email.lower()
    if not is_valid_email(email):
        return Classification(SubscriptionOutcome.INVALID, email)
    return Classification(SubscriptionOutcome.ACCEPTED, email)


@dataclass(frozen=True)
class SubscriptionEvent:
    """An accepted sign-up, as written to the operational log."""
    email: str
    client_key: str
    user_agent: str = "n/a"
    at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class SubscriptionSink(ABC):
    """Destination for accepted sign-ups."""

    @abstractmethod
    async def record(self, event: SubscriptionEvent) -> None:
        pass


class LoggingSubscriptionSink(SubscriptionSink):
    """Writes sign-ups to the structured application log.

    Delivery to an email-list provider (double opt-in, provider API call)
    would hang off this sink; the site currently only logs.
    """

    async def record(self, event: SubscriptionEvent) -> None:
        logger.info(
            "Subscribe request",
            extra=get_log_context(
                client_key=event.client_key,
                user_agent=event.user_agent,
                email=event.email,
                at=event.at,
            ),
        )


_sink_instance: Optional[SubscriptionSink] = None


def get_subscription_sink() -> SubscriptionSink:
    global _sink_instance
    if _sink_instance is None:
        _sink_instance = LoggingSubscriptionSink()
    return _sink_instance
