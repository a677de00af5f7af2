"""Terminal state selection for messages and calls."""
import threading

from mocktwilio.errors import ValidationError
from mocktwilio.models import CallStatus, MessageStatus


class OutcomePolicy:
    """Decides how each message or call ends, by destination number.

    Priority:
    1. An outcome set for the To number
    2. The default outcome

    Nothing is random, so a test always sees the same terminal state for the
    same configuration.
    """

    def __init__(
        self,
        default_message: str = MessageStatus.DELIVERED,
        default_call: str = CallStatus.COMPLETED,
        messages: dict[str, str] | None = None,
        calls: dict[str, str] | None = None,
    ):
        self._lock = threading.Lock()
        self._default_message = self._check_message(default_message)
        self._default_call = self._check_call(default_call)
        self._messages = {n: self._check_message(s) for n, s in (messages or {}).items()}
        self._calls = {n: self._check_call(s) for n, s in (calls or {}).items()}

    @staticmethod
    def _check_message(status: str) -> str:
        if status not in MessageStatus.TERMINAL:
            raise ValidationError(
                f"message outcome must be one of {sorted(MessageStatus.TERMINAL)}, got: {status}",
                field="MessageStatus",
            )
        return status

    @staticmethod
    def _check_call(status: str) -> str:
        if status not in CallStatus.TERMINAL:
            raise ValidationError(
                f"call outcome must be one of {sorted(CallStatus.TERMINAL)}, got: {status}",
                field="CallStatus",
            )
        return status

    def set_message_outcome(self, to_number: str, status: str) -> None:
        status = self._check_message(status)
        with self._lock:
            self._messages[to_number] = status

    def set_call_outcome(self, to_number: str, status: str) -> None:
        status = self._check_call(status)
        with self._lock:
            self._calls[to_number] = status

    def message_outcome(self, to_number: str) -> str:
        with self._lock:
            return self._messages.get(to_number, self._default_message)

    def call_outcome(self, to_number: str) -> str:
        with self._lock:
            return self._calls.get(to_number, self._default_call)
