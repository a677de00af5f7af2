"""SID generation."""
import threading


class SidIssuer:
    """Issues SIDs shaped like Twilio's: a two-letter prefix and 32 digits.

    The counter is shared by all prefixes and only ever moves forward, so a
    SID is never handed out twice for the lifetime of the issuer.
    """

    def __init__(self, start: int = 0):
        self._last = start
        self._lock = threading.Lock()

    def next(self, prefix: str) -> str:
        with self._lock:
            self._last += 1
            value = self._last
        return f"{prefix}{value:032d}"
