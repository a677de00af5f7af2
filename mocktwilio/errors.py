"""Error types for the Twilio mock server."""
from typing import Any


class MockTwilioError(Exception):
    """Base class for errors that map to a provider-shaped error response.

    Attributes:
        error_type: Name of the error template to render
        http_status: HTTP status code for the API response
        context: Extra template context (offending field, number, SID)
    """

    error_type = "internal_error"
    http_status = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_error(self) -> dict[str, Any]:
        """Return the error dict consumed by the error templates."""
        return {
            "error_type": self.error_type,
            "http_status": self.http_status,
            "message": self.message,
            **self.context,
        }


class ValidationError(MockTwilioError):
    """Malformed number, URL without a scheme, or bad messaging service SID."""

    error_type = "invalid_parameter"
    http_status = 400


class EmptyServiceError(ValidationError):
    """Messaging service has no numbers to send from."""

    error_type = "empty_messaging_service"


class DuplicateError(MockTwilioError):
    """Number or messaging service identity is already registered."""

    error_type = "duplicate"
    http_status = 409


class NotFoundError(MockTwilioError):
    """Unknown SID or unregistered sender."""

    error_type = "not_found"
    http_status = 404


class UnknownSenderError(NotFoundError):
    """From number or messaging service is not registered with the server."""

    error_type = "invalid_from_number"


class ServerClosedError(MockTwilioError):
    """Work was submitted after shutdown began."""

    error_type = "service_unavailable"
    http_status = 503


class WebhookDeliveryError(Exception):
    """An outbound webhook could not be delivered.

    Reported to the server's error callback; never raised into the lifecycle
    or the original API caller.
    """

    def __init__(self, url: str, reason: str, status_code: int | None = None):
        super().__init__(f"webhook {url} failed: {reason}")
        self.url = url
        self.reason = reason
        self.status_code = status_code


class InFlightTimeoutError(TimeoutError):
    """wait_in_flight gave up before the in-flight work drained."""


class LifecycleError(RuntimeError):
    """Illegal state transition or SID reuse. Indicates a bug in the server."""
