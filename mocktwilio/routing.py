"""Routing tables for registered numbers and messaging services."""
import logging
import threading
from dataclasses import replace
from urllib.parse import urlsplit

import phonenumbers

from mocktwilio.errors import (
    DuplicateError,
    EmptyServiceError,
    NotFoundError,
    UnknownSenderError,
    ValidationError,
)
from mocktwilio.models import MESSAGING_SERVICE_PREFIX, MsgService, Number

logger = logging.getLogger(__name__)


def validate_phone_number(number: str) -> None:
    """Check that a number parses as E.164.

    Raises:
        ValidationError: If the number can't be parsed
    """
    try:
        phonenumbers.parse(number, None)
    except phonenumbers.NumberParseException as e:
        raise ValidationError(
            f"invalid phone number {number}: {e}", field="Number", number=number
        ) from e


def validate_url(url: str, field: str = "Url") -> None:
    """Check that a webhook URL carries a scheme and a usable host and port.

    Raises:
        ValidationError: If the URL is malformed or has no scheme
    """
    try:
        parts = urlsplit(url)
        # port is parsed lazily and raises on a non-numeric or out of range value
        parts.port
    except ValueError as e:
        raise ValidationError(f"invalid URL {url}: {e}", field=field) from e
    if not parts.scheme:
        raise ValidationError(f"invalid URL (missing scheme): {url}", field=field)


class _ServiceEntry:
    """A messaging service as held by the store."""

    def __init__(self, service: MsgService, members: list[Number]):
        self.service = service
        self.members = members
        self.cursor = 0


class RoutingStore:
    """Registered numbers and messaging services.

    Both tables are owned by one lock. Every public method takes the lock for
    its whole duration, so composite operations such as creating a service
    together with its missing numbers are a single step as far as any other
    caller can tell. Numbers handed out are copies.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._numbers: dict[str, Number] = {}
        self._services: dict[str, _ServiceEntry] = {}

    def add_number(self, number: Number) -> None:
        """Register a number.

        Raises:
            ValidationError: If the number or a webhook URL is malformed
            DuplicateError: If the number is already registered
        """
        validate_phone_number(number.number)
        for url in (number.sms_webhook_url, number.voice_webhook_url):
            if url:
                validate_url(url)

        with self._lock:
            if number.number in self._numbers:
                raise DuplicateError(f"number {number.number} already exists", number=number.number)
            self._numbers[number.number] = replace(number)

        logger.info(f"Number registered: {number.number}")

    def add_msg_service(self, service: MsgService) -> None:
        """Register a messaging service, creating bare numbers it references.

        Raises:
            ValidationError: If the SID, a number, or the webhook URL is malformed
            DuplicateError: If the service SID is already registered
        """
        if not service.id.startswith(MESSAGING_SERVICE_PREFIX):
            raise ValidationError(f"invalid MsgService SID {service.id}", field="MessagingServiceSid")
        if service.sms_webhook_url:
            validate_url(service.sms_webhook_url)
        for number in service.numbers:
            validate_phone_number(number)

        with self._lock:
            if service.id in self._services:
                raise DuplicateError(f"MsgService SID {service.id} already exists", sid=service.id)

            members = []
            for number in service.numbers:
                entry = self._numbers.get(number)
                if entry is None:
                    entry = Number(number=number)
                    self._numbers[number] = entry
                members.append(entry)

            self._services[service.id] = _ServiceEntry(
                replace(service, numbers=list(service.numbers)), members
            )

        logger.info(f"Messaging service registered: {service.id} ({len(service.numbers)} numbers)")

    def number(self, number: str) -> Number:
        """Look up a registered number.

        Raises:
            NotFoundError: If the number is not registered
        """
        with self._lock:
            entry = self._numbers.get(number)
            if entry is None:
                raise NotFoundError(f"number {number} not found", number=number)
            return replace(entry)

    def has_number(self, number: str) -> bool:
        with self._lock:
            return number in self._numbers

    def msg_service(self, service_id: str) -> MsgService:
        """Look up a registered messaging service.

        Raises:
            NotFoundError: If the service is not registered
        """
        with self._lock:
            entry = self._services.get(service_id)
            if entry is None:
                raise NotFoundError(f"MsgService SID {service_id} not found", sid=service_id)
            return replace(entry.service, numbers=list(entry.service.numbers))

    def service_numbers(self, service_id: str) -> list[Number]:
        """Return the member numbers of a service, empty if it is unknown."""
        with self._lock:
            entry = self._services.get(service_id)
            if entry is None:
                return []
            return [replace(n) for n in entry.members]

    def next_service_number(self, service_id: str) -> Number:
        """Pick the next sender from a service, round-robin.

        Raises:
            UnknownSenderError: If the service is not registered
            EmptyServiceError: If the service has no numbers
        """
        with self._lock:
            entry = self._services.get(service_id)
            if entry is None:
                raise UnknownSenderError(
                    f"messaging service {service_id} not found", field="From", number=service_id
                )
            if not entry.members:
                raise EmptyServiceError(
                    f"messaging service {service_id} has no phone numbers", sid=service_id
                )
            member = entry.members[entry.cursor % len(entry.members)]
            entry.cursor += 1
            return replace(member)

    def sms_webhook_for(self, number: str, service_id: str | None = None) -> str | None:
        """Resolve the SMS webhook for a send from number.

        The service's own webhook wins over the number's when the send goes
        through a service.
        """
        with self._lock:
            if service_id:
                entry = self._services.get(service_id)
                if entry is not None and entry.service.sms_webhook_url:
                    return entry.service.sms_webhook_url
            entry = self._numbers.get(number)
            return entry.sms_webhook_url if entry else None

    def set_webhooks(
        self,
        number: str,
        sms_webhook_url: str | None = None,
        voice_webhook_url: str | None = None,
    ) -> None:
        """Replace the webhooks of a registered number. Identity never changes.

        Raises:
            ValidationError: If a URL is malformed
            NotFoundError: If the number is not registered
        """
        for url in (sms_webhook_url, voice_webhook_url):
            if url:
                validate_url(url)

        with self._lock:
            entry = self._numbers.get(number)
            if entry is None:
                raise NotFoundError(f"number {number} not found", number=number)
            entry.sms_webhook_url = sms_webhook_url
            entry.voice_webhook_url = voice_webhook_url

    def counts(self) -> dict[str, int]:
        with self._lock:
            return {"numbers": len(self._numbers), "messaging_services": len(self._services)}
