"""Data model for numbers, messaging services, and lifecycle states."""
from dataclasses import dataclass, field

MESSAGING_SERVICE_PREFIX = "MG"
MESSAGE_SID_PREFIX = "SM"
CALL_SID_PREFIX = "CA"

API_VERSION = "2010-04-01"


class MessageStatus:
    """Message delivery states."""

    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    UNDELIVERED = "undelivered"
    FAILED = "failed"

    TERMINAL = frozenset({DELIVERED, UNDELIVERED, FAILED})

    TRANSITIONS = {
        QUEUED: frozenset({SENDING}),
        SENDING: frozenset({SENT}),
        SENT: TERMINAL,
    }

    # Provider error codes reported with unsuccessful terminal states
    ERROR_CODES = {
        UNDELIVERED: 30003,
        FAILED: 30008,
    }


class CallStatus:
    """Voice call states."""

    QUEUED = "queued"
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    FAILED = "failed"
    CANCELED = "canceled"

    TERMINAL = frozenset({COMPLETED, BUSY, NO_ANSWER, FAILED, CANCELED})

    TRANSITIONS = {
        QUEUED: frozenset({INITIATED}),
        INITIATED: frozenset({RINGING}),
        RINGING: frozenset({IN_PROGRESS, BUSY, NO_ANSWER, FAILED, CANCELED}),
        IN_PROGRESS: frozenset({COMPLETED}),
    }


@dataclass
class Number:
    """A provider phone number and the webhooks it points at."""

    number: str
    voice_webhook_url: str | None = None
    sms_webhook_url: str | None = None


@dataclass
class MsgService:
    """A messaging service that rotates sends across its numbers.

    sms_webhook_url, when set, takes precedence over each member number's
    own SMS webhook for every send through the service.
    """

    id: str
    numbers: list[str] = field(default_factory=list)
    sms_webhook_url: str | None = None


@dataclass(frozen=True)
class CarrierInfo:
    """Carrier metadata returned by the Lookup endpoint."""

    name: str | None = None
    type: str = "unknown"
    mobile_country_code: str | None = None
    mobile_network_code: str | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "type": self.type,
            "mobile_country_code": self.mobile_country_code,
            "mobile_network_code": self.mobile_network_code,
            "error_code": None,
        }
