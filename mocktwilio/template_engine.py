"""Template engine for rendering provider-shaped JSON responses."""
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from mocktwilio.models import API_VERSION, CarrierInfo, MessageStatus

DEFAULT_TEMPLATES_PATH = Path(__file__).parent / "templates" / "responses"


class TemplateEngine:
    """Jinja2-based template engine for JSON responses."""

    def __init__(self, templates_path: str | None = None, provider: str = "twilio"):
        """Initialize template engine.

        Args:
            templates_path: Path to the responses templates directory; errors
                are read from its sibling "errors" directory. Defaults to the
                templates shipped with the package.
            provider: Provider name (e.g., 'twilio')
        """
        self.templates_path = Path(templates_path) if templates_path else DEFAULT_TEMPLATES_PATH
        self.provider = provider

        # JSON templates escape values with |tojson, so autoescape stays off
        self.response_env = Environment(
            loader=FileSystemLoader(str(self.templates_path)),
            autoescape=False,
            undefined=StrictUndefined,
        )

        errors_path = self.templates_path.parent / "errors"
        self.error_env = Environment(
            loader=FileSystemLoader(str(errors_path)),
            autoescape=False,
        )

    @staticmethod
    def get_timestamp(value: str | None = None) -> str:
        """Format a stored ISO timestamp (or now) in RFC 2822, as Twilio does.

        Args:
            value: ISO 8601 timestamp; None means the current time

        Returns:
            Timestamp like "Tue, 15 Jan 2024 10:30:00 +0000"
        """
        moment = datetime.fromisoformat(value) if value else datetime.now(timezone.utc)
        return moment.astimezone(timezone.utc).strftime("%a, %d %b %Y %H:%M:%S +0000")

    @staticmethod
    def calculate_sms_segments(body: str) -> int:
        """Calculate number of SMS segments based on message length.

        SMS segmentation rules:
        - GSM-7 encoding (ASCII): 160 chars for single, 153 chars per segment for multi-part
        - UCS-2 encoding (Unicode): 70 chars for single, 67 chars per segment for multi-part

        Args:
            body: Message body text

        Returns:
            Number of segments required
        """
        if not body:
            return 1

        is_unicode = any(ord(char) > 127 for char in body)
        if is_unicode:
            single_limit, multi_limit = 70, 67
        else:
            single_limit, multi_limit = 160, 153

        if len(body) <= single_limit:
            return 1
        return (len(body) + multi_limit - 1) // multi_limit

    def render_response(self, template_name: str, context: dict[str, Any]) -> dict[str, Any]:
        """Render response template with context.

        Args:
            template_name: Template filename
            context: Template context variables

        Returns:
            Rendered response as dict
        """
        template = self.response_env.get_template(f"{self.provider}/{template_name}")
        return json.loads(template.render(**context))

    def render_error(self, error: dict[str, Any]) -> dict[str, Any]:
        """Render the error template named by error["error_type"].

        Args:
            error: Error dict with error_type, http_status, and template fields

        Returns:
            Rendered error response as dict
        """
        template = self.error_env.get_template(f"{self.provider}/{error['error_type']}.json")
        return json.loads(template.render(**error))

    def create_message_context(self, message: dict[str, Any]) -> dict[str, Any]:
        """Create context for the message resource template.

        Args:
            message: Stored message row

        Returns:
            Template context dict
        """
        sent = message["status"] not in (MessageStatus.QUEUED, MessageStatus.SENDING)
        return {
            "api_version": API_VERSION,
            "message": message,
            "date_created": self.get_timestamp(message["created_at"]),
            "date_updated": self.get_timestamp(message["updated_at"]),
            "date_sent": self.get_timestamp(message["updated_at"]) if sent else None,
        }

    def create_call_context(self, call: dict[str, Any]) -> dict[str, Any]:
        """Create context for the call resource template.

        Args:
            call: Stored call row

        Returns:
            Template context dict
        """
        return {
            "api_version": API_VERSION,
            "call": call,
            "date_created": self.get_timestamp(call["created_at"]),
            "date_updated": self.get_timestamp(call["updated_at"]),
        }

    def create_lookup_context(
        self,
        phone_number: str,
        country_code: str | None,
        national_format: str,
        carrier_info: CarrierInfo | None,
    ) -> dict[str, Any]:
        """Create context for the Lookup phone number template."""
        return {
            "phone_number": phone_number,
            "country_code": country_code,
            "national_format": national_format,
            "carrier": carrier_info.to_dict() if carrier_info else None,
        }
