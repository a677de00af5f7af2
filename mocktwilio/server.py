"""Mock Twilio server: routing, lifecycle tables, and the coordinator."""
import logging
from collections.abc import Callable
from typing import Any

from mocktwilio.callbacks import CallbackHandler
from mocktwilio.carrier import CarrierInfoCache
from mocktwilio.config import Config
from mocktwilio.coordinator import Coordinator
from mocktwilio.errors import NotFoundError, ServerClosedError, UnknownSenderError
from mocktwilio.ids import SidIssuer
from mocktwilio.lifecycle import CallLifecycle, MessageLifecycle
from mocktwilio.models import (
    CALL_SID_PREFIX,
    MESSAGE_SID_PREFIX,
    MESSAGING_SERVICE_PREFIX,
    CarrierInfo,
    MsgService,
    Number,
)
from mocktwilio.outcomes import OutcomePolicy
from mocktwilio.routing import RoutingStore, validate_url
from mocktwilio.storage import Storage
from mocktwilio.template_engine import TemplateEngine

logger = logging.getLogger(__name__)


class MockServer:
    """Stands in for the Twilio SMS and voice APIs during tests.

    Numbers and messaging services can be registered from any thread. Sends,
    calls, wait_in_flight and close must run on the event loop the server
    was started on.

    Usage:
        async with MockServer(config) as server:
            server.add_number(Number("+15550001234", sms_webhook_url="http://test/hook"))
            ...
            await server.wait_in_flight(timeout=5)
    """

    def __init__(self, config: Config, on_error: Callable[[Exception], None] | None = None):
        """Initialize the server and register configured numbers.

        Args:
            config: Server configuration
            on_error: Receives webhook delivery errors and lifecycle failures;
                defaults to logging them
        """
        self.config = config
        self.account_sid = config.twilio.account_sid
        self.on_error = on_error or self._log_error

        self.routing = RoutingStore()
        self.sids = SidIssuer()
        self.storage = Storage(config.database.path)
        self.carriers = CarrierInfoCache()
        outcomes = config.twilio.outcomes
        self.outcomes = OutcomePolicy(
            default_message=outcomes.default_message,
            default_call=outcomes.default_call,
            messages=outcomes.messages,
            calls=outcomes.calls,
        )
        self.template_engine = TemplateEngine(config.templates.path, config.provider)
        self.callbacks = CallbackHandler(config.twilio.lifecycle, self.storage, self._report)
        self.coordinator = Coordinator(on_error=self._report)

        for number in config.twilio.numbers:
            self.routing.add_number(number)
        for service in config.twilio.messaging_services:
            self.routing.add_msg_service(service)

    async def __aenter__(self) -> "MockServer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @staticmethod
    def _log_error(error: Exception) -> None:
        logger.error(f"Mock server error: {error}")

    def _report(self, error: Exception) -> None:
        self.on_error(error)

    async def start(self) -> None:
        """Start the coordinator on the running event loop."""
        self.coordinator.start()
        logger.info(f"Mock server started for account {self.account_sid}")

    async def close(self) -> None:
        """Shut down, letting running lifecycles finish. Idempotent."""
        await self.coordinator.close()
        self.storage.close()

    async def wait_in_flight(self, timeout: float | None = None) -> None:
        """Wait until every submitted message and call has stopped running.

        Raises:
            InFlightTimeoutError: If timeout elapses first
        """
        await self.coordinator.wait_in_flight(timeout)

    # Routing
    def add_number(self, number: Number) -> None:
        """Register a number. See RoutingStore.add_number."""
        self.routing.add_number(number)

    def add_msg_service(self, service: MsgService) -> None:
        """Register a messaging service. See RoutingStore.add_msg_service."""
        self.routing.add_msg_service(service)

    def number(self, number: str) -> Number:
        return self.routing.number(number)

    # Outcome injection
    def set_message_outcome(self, to_number: str, status: str) -> None:
        self.outcomes.set_message_outcome(to_number, status)

    def set_call_outcome(self, to_number: str, status: str) -> None:
        self.outcomes.set_call_outcome(to_number, status)

    # Carrier info
    def set_carrier_info(self, number: str, info: CarrierInfo) -> None:
        self.carriers.set(number, info)

    def carrier_info(self, number: str) -> CarrierInfo:
        return self.carriers.get(number)

    # Lifecycle entry points
    def _check_open(self) -> None:
        if self.coordinator.closed:
            raise ServerClosedError("server is shutting down")

    def _resolve_sender(self, sender: str) -> tuple[str, str | None]:
        """Map a From value to (phone number, messaging service SID)."""
        if sender.startswith(MESSAGING_SERVICE_PREFIX):
            return self.routing.next_service_number(sender).number, sender
        if not self.routing.has_number(sender):
            raise UnknownSenderError(f"number {sender} not registered", field="From", number=sender)
        return sender, None

    def send_message(
        self,
        from_: str,
        to: str,
        body: str,
        media_urls: list[str] | None = None,
        status_callback: str | None = None,
    ) -> dict[str, Any]:
        """Queue an outbound message and start its lifecycle.

        Args:
            from_: Registered number or messaging service SID
            to: Recipient number
            body: Message text
            media_urls: Optional media URLs
            status_callback: Webhook used when neither the service nor the
                number has an SMS webhook

        Returns:
            The stored message, in the queued state

        Raises:
            UnknownSenderError: If from_ isn't registered
            ValidationError: If status_callback is not a usable URL
            EmptyServiceError: If the messaging service has no numbers
            ServerClosedError: If the server is shutting down
        """
        self._check_open()
        if status_callback:
            validate_url(status_callback, field="StatusCallback")
        from_number, service_sid = self._resolve_sender(from_)
        webhook_url = self.routing.sms_webhook_for(from_number, service_sid) or status_callback

        message = self.storage.create_message(
            message_sid=self.sids.next(MESSAGE_SID_PREFIX),
            account_sid=self.account_sid,
            from_number=from_number,
            to_number=to,
            body=body,
            webhook_url=webhook_url,
            messaging_service_sid=service_sid,
            media_urls=media_urls,
            num_segments=self.template_engine.calculate_sms_segments(body),
        )
        outcome = self.outcomes.message_outcome(to)
        self.coordinator.submit(
            MessageLifecycle(
                message,
                outcome,
                storage=self.storage,
                callbacks=self.callbacks,
                settings=self.config.twilio.lifecycle,
            )
        )

        logger.info(
            f"Message created: {message['message_sid']} from {from_number} to {to} "
            f"(outcome={outcome})"
        )
        return message

    def start_call(
        self,
        from_: str,
        to: str,
        url: str,
        status_callback: str | None = None,
    ) -> dict[str, Any]:
        """Queue an outbound call and start its lifecycle.

        Args:
            from_: Registered number placing the call
            to: Number being called
            url: Answer webhook returning TwiML
            status_callback: Webhook used when the number has no voice webhook

        Returns:
            The stored call, in the queued state

        Raises:
            UnknownSenderError: If from_ isn't registered
            ValidationError: If url or status_callback is not a usable URL
            ServerClosedError: If the server is shutting down
        """
        self._check_open()
        validate_url(url)
        if status_callback:
            validate_url(status_callback, field="StatusCallback")
        try:
            number = self.routing.number(from_)
        except NotFoundError:
            raise UnknownSenderError(
                f"number {from_} not registered", field="From", number=from_
            ) from None

        call = self.storage.create_call(
            call_sid=self.sids.next(CALL_SID_PREFIX),
            account_sid=self.account_sid,
            from_number=number.number,
            to_number=to,
            url=url,
            webhook_url=number.voice_webhook_url or status_callback,
        )
        outcome = self.outcomes.call_outcome(to)
        self.coordinator.submit(
            CallLifecycle(
                call,
                outcome,
                storage=self.storage,
                callbacks=self.callbacks,
                settings=self.config.twilio.lifecycle,
            )
        )

        logger.info(f"Call created: {call['call_sid']} from {from_} to {to} (outcome={outcome})")
        return call

    def message(self, message_sid: str) -> dict[str, Any]:
        """Current snapshot of a message.

        Raises:
            NotFoundError: If the SID is unknown
        """
        message = self.storage.get_message(message_sid)
        if message is None:
            raise NotFoundError(f"message {message_sid} not found", sid=message_sid)
        return message

    def call(self, call_sid: str) -> dict[str, Any]:
        """Current snapshot of a call.

        Raises:
            NotFoundError: If the SID is unknown
        """
        call = self.storage.get_call(call_sid)
        if call is None:
            raise NotFoundError(f"call {call_sid} not found", sid=call_sid)
        return call

    def list_messages(self, limit: int, offset: int = 0) -> list[dict[str, Any]]:
        """Messages newest first, for paged listing."""
        return self.storage.get_all_messages(limit=limit, offset=offset)

    def list_calls(self, limit: int, offset: int = 0) -> list[dict[str, Any]]:
        """Calls newest first, for paged listing."""
        return self.storage.get_all_calls(limit=limit, offset=offset)

    def statistics(self) -> dict[str, int]:
        return {
            **self.storage.get_statistics(),
            **self.routing.counts(),
            "in_flight": self.coordinator.in_flight,
        }
