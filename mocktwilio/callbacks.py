"""Outbound webhook delivery for the Twilio mock server."""
import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

import httpx

from mocktwilio.config import LifecycleConfig
from mocktwilio.errors import WebhookDeliveryError
from mocktwilio.storage import Storage

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[Exception], None]


class CallbackHandler:
    """Delivers form-encoded webhooks and logs every attempt.

    Failures are handed to on_error as WebhookDeliveryError and never raised,
    so a webhook that can't be reached never holds back a lifecycle.
    """

    def __init__(
        self,
        settings: LifecycleConfig,
        storage: Storage,
        on_error: ErrorCallback,
    ):
        """Initialize callback handler.

        Args:
            settings: Lifecycle timing and retry settings
            storage: Storage instance for callback logs
            on_error: Error reporting callback
        """
        self.settings = settings
        self.storage = storage
        self.on_error = on_error

    async def send_callback(
        self,
        url: str,
        payload: dict[str, Any],
        attempt: int = 1,
    ) -> tuple[bool, int, str]:
        """POST a webhook once.

        Args:
            url: Callback URL
            payload: Callback payload data
            attempt: Current attempt number

        Returns:
            Tuple of (success, status_code, response_body)
        """
        sid = payload.get("MessageSid") or payload.get("CallSid")
        try:
            async with httpx.AsyncClient(timeout=self.settings.webhook_timeout_seconds) as client:
                response = await client.post(
                    url,
                    data=payload,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )

            logger.info(
                f"Callback sent to {url} (attempt {attempt}): "
                f"status={response.status_code}"
            )

            self.storage.create_callback_log(
                target_url=url,
                payload=json.dumps(payload),
                status_code=response.status_code,
                response_body=response.text[:500],
                attempt_number=attempt,
                sid=sid,
            )

            return response.is_success, response.status_code, response.text

        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Callback failed to {url} (attempt {attempt}): {e!r}")

            self.storage.create_callback_log(
                target_url=url,
                payload=json.dumps(payload),
                status_code=None,
                response_body=f"Error: {e!r}",
                attempt_number=attempt,
                sid=sid,
            )

            return False, 0, repr(e)

    async def send_callback_with_retry(
        self,
        url: str,
        payload: dict[str, Any],
    ) -> tuple[bool, str]:
        """POST a webhook, retrying up to the configured number of attempts.

        The final failure is reported to on_error.

        Args:
            url: Callback URL
            payload: Callback payload

        Returns:
            Tuple of (success, response_body of the last attempt)
        """
        max_attempts = self.settings.retry_attempts
        retry_delay = self.settings.retry_delay_seconds

        status_code, response_body = 0, ""
        for attempt in range(1, max_attempts + 1):
            success, status_code, response_body = await self.send_callback(
                url, payload, attempt
            )

            if success:
                return True, response_body

            if attempt < max_attempts:
                await asyncio.sleep(retry_delay)

        reason = f"HTTP {status_code}" if status_code else response_body
        self.report(WebhookDeliveryError(url, reason, status_code or None))
        return False, response_body

    def report(self, error: Exception) -> None:
        """Hand an error to the error callback. A failing callback is only logged."""
        try:
            self.on_error(error)
        except Exception:
            logger.exception("Error callback raised")
