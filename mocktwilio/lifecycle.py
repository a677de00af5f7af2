"""Delivery lifecycles for messages and calls.

Each lifecycle is one asyncio task started by the coordinator. It owns its
entity from the queued state until a terminal state and is the only writer
of that entity's row in the lifecycle tables.

Message: queued -> sending -> sent -> delivered | undelivered | failed
Call:    queued -> initiated -> ringing -> in-progress -> completed
                                        \\-> busy | no-answer | failed | canceled

Shutdown is cooperative. A lifecycle checks the stop event before every
transition and while it waits out simulated latency; a transition that has
started (state change plus its webhook) always finishes, and nothing is
rolled back.
"""
import asyncio
import logging
from typing import Any

from mocktwilio.callbacks import CallbackHandler
from mocktwilio.config import LifecycleConfig
from mocktwilio.errors import WebhookDeliveryError
from mocktwilio.models import API_VERSION, CallStatus, MessageStatus
from mocktwilio.storage import Storage
from mocktwilio.twiml import REDIRECT, REJECT, TwimlError, TwimlResult, interpret

logger = logging.getLogger(__name__)


class Lifecycle:
    """Common plumbing for a single entity's state machine."""

    kind = "entity"

    def __init__(
        self,
        sid: str,
        outcome: str,
        storage: Storage,
        callbacks: CallbackHandler,
        settings: LifecycleConfig,
    ):
        self.sid = sid
        self.outcome = outcome
        self.storage = storage
        self.callbacks = callbacks
        self.settings = settings

    async def run(self, stopping: asyncio.Event) -> None:
        raise NotImplementedError

    async def _pause(self, stopping: asyncio.Event) -> bool:
        """Wait out the simulated provider latency.

        Returns:
            False if the server started shutting down, True otherwise
        """
        if stopping.is_set():
            return False
        if self.settings.delay_seconds <= 0:
            return True
        try:
            await asyncio.wait_for(stopping.wait(), timeout=self.settings.delay_seconds)
        except asyncio.TimeoutError:
            return True
        return False

    def _stopped(self, status: str) -> None:
        logger.info(f"{self.kind.capitalize()} {self.sid} stopped at {status}: server shutting down")


class MessageLifecycle(Lifecycle):
    """Drives one outbound message to its terminal state."""

    kind = "message"

    def __init__(self, message: dict[str, Any], outcome: str, **kwargs):
        super().__init__(message["message_sid"], outcome, **kwargs)
        self.message = message

    async def run(self, stopping: asyncio.Event) -> None:
        status = self.message["status"]
        for next_status in (MessageStatus.SENDING, MessageStatus.SENT, self.outcome):
            if next_status != MessageStatus.SENDING and not await self._pause(stopping):
                self._stopped(status)
                return
            if stopping.is_set():
                self._stopped(status)
                return
            await self._advance(next_status)
            status = next_status

        logger.info(f"Message lifecycle completed for {self.sid} (final status: {status})")

    async def _advance(self, status: str) -> None:
        error_code = MessageStatus.ERROR_CODES.get(status)
        self.message = self.storage.transition_message(self.sid, status, error_code)
        logger.info(f"Message {self.sid} status updated to: {status}")

        url = self.message["webhook_url"]
        if url:
            logger.info(f"Sending {status} callback for message {self.sid} to {url}")
            await self.callbacks.send_callback_with_retry(url, self.payload())

    def payload(self) -> dict[str, Any]:
        """Build the status callback form for the message's current state."""
        message = self.message
        payload = {
            "MessageSid": message["message_sid"],
            "SmsSid": message["message_sid"],
            "AccountSid": message["account_sid"],
            "From": message["from_number"],
            "To": message["to_number"],
            "Body": message["body"] or "",
            "NumMedia": str(len(message["media_urls"])),
            "MessageStatus": message["status"],
            "SmsStatus": message["status"],
            "ApiVersion": API_VERSION,
        }
        if message["messaging_service_sid"]:
            payload["MessagingServiceSid"] = message["messaging_service_sid"]
        if message["error_code"]:
            payload["ErrorCode"] = str(message["error_code"])
        return payload


class CallLifecycle(Lifecycle):
    """Drives one outbound call, including the answer webhook exchange."""

    kind = "call"

    def __init__(self, call: dict[str, Any], outcome: str, **kwargs):
        super().__init__(call["call_sid"], outcome, **kwargs)
        self.call = call
        self.current_url = call["url"]

    async def run(self, stopping: asyncio.Event) -> None:
        if stopping.is_set():
            self._stopped(CallStatus.QUEUED)
            return
        await self._advance(CallStatus.INITIATED)

        if not await self._pause(stopping):
            self._stopped(CallStatus.INITIATED)
            return
        await self._advance(CallStatus.RINGING)

        if not await self._pause(stopping):
            self._stopped(CallStatus.RINGING)
            return

        if self.outcome != CallStatus.COMPLETED:
            await self._advance(self.outcome, duration=0)
        else:
            await self._answer(stopping)

        logger.info(f"Call lifecycle completed for {self.sid} (final status: {self.call['status']})")

    async def _answer(self, stopping: asyncio.Event) -> None:
        """Fetch the answer TwiML and follow it until the call ends.

        The answer request carries CallStatus=in-progress, but the stored call
        stays ringing until the TwiML is known: a Reject ends the call without
        it ever being in-progress, so that transition and its status callback
        only happen once the document allows the call to be answered.
        """
        result = await self._fetch_twiml(self.current_url)
        if result is not None and result.action == REJECT:
            status = CallStatus.BUSY if result.reason == "busy" else CallStatus.NO_ANSWER
            await self._advance(status, duration=0)
            return

        await self._advance(CallStatus.IN_PROGRESS)

        duration = 0
        redirects = 0
        while result is not None and result.action == REDIRECT:
            duration += result.duration
            redirects += 1
            if redirects > self.settings.max_redirects:
                logger.warning(f"Call {self.sid} exceeded {self.settings.max_redirects} redirects, hanging up")
                result = None
                break
            if stopping.is_set():
                self._stopped(CallStatus.IN_PROGRESS)
                return
            self.current_url = result.redirect_url
            result = await self._fetch_twiml(self.current_url)

        if result is not None:
            duration += result.duration
        await self._advance(CallStatus.COMPLETED, duration=duration)

    async def _fetch_twiml(self, url: str) -> TwimlResult | None:
        """Request TwiML from url.

        Returns:
            The interpreted document, or None if the webhook failed (already reported)
        """
        payload = self.payload(CallStatus.IN_PROGRESS)
        logger.info(f"Requesting TwiML for call {self.sid} from {url}")
        success, body = await self.callbacks.send_callback_with_retry(url, payload)
        if not success:
            return None

        try:
            return interpret(body, url)
        except TwimlError as e:
            self.callbacks.report(WebhookDeliveryError(url, str(e)))
            return None

    async def _advance(self, status: str, duration: int | None = None) -> None:
        self.call = self.storage.transition_call(self.sid, status, duration)
        logger.info(f"Call {self.sid} status updated to: {status}")

        url = self.call["webhook_url"]
        if url:
            logger.info(f"Sending {status} callback for call {self.sid} to {url}")
            await self.callbacks.send_callback_with_retry(url, self.payload(status))

    def payload(self, status: str) -> dict[str, Any]:
        """Build the form sent with status callbacks and TwiML requests."""
        call = self.call
        payload = {
            "CallSid": call["call_sid"],
            "AccountSid": call["account_sid"],
            "From": call["from_number"],
            "To": call["to_number"],
            "CallStatus": status,
            "Direction": "outbound-api",
            "ApiVersion": API_VERSION,
            "Url": self.current_url,
        }
        if status in CallStatus.TERMINAL:
            payload["CallDuration"] = str(call["duration"] or 0)
        return payload
