"""Twilio request validation for the mock server API."""
import hmac
from typing import Any, Iterable, Optional

import phonenumbers

from mocktwilio.config import TwilioConfig

Check = tuple[bool, Optional[dict[str, Any]]]

OK: Check = (True, None)

# Without these a message or call has nowhere to go, so they are checked
# even when require_parameters is off
ROUTING_PARAMETERS = frozenset({"To", "From", "Url"})


def _fail(error_type: str, http_status: int = 400, **fields: Any) -> Check:
    return False, {"error_type": error_type, "http_status": http_status, **fields}


class TwilioProvider:
    """Validates inbound API requests the way Twilio does.

    Each check returns (is_valid, error). error is None when valid, otherwise
    a dict naming the error template, the HTTP status, and template fields.
    """

    def __init__(self, config: TwilioConfig):
        self.config = config
        self.validation = config.validation

    def validate_auth(self, username: str | None, password: str | None) -> Check:
        """Compare Basic Auth credentials with the configured account.

        Args:
            username: AccountSid half of the Authorization header
            password: AuthToken half of the Authorization header
        """
        if not self.validation.require_auth:
            return OK

        valid = (
            bool(username)
            and bool(password)
            and hmac.compare_digest(username.encode(), self.config.account_sid.encode())
            and hmac.compare_digest(password.encode(), self.config.auth_token.encode())
        )
        return OK if valid else _fail("auth_failed", 401)

    def validate_account(self, account_sid: str, path: str) -> Check:
        """The AccountSid path segment must name the configured account.

        Only enforced together with auth. path is echoed in the 404 body.
        """
        if not self.validation.require_auth or account_sid == self.config.account_sid:
            return OK
        return _fail("not_found", 404, path=path)

    def validate_parameters(self, request_data: dict[str, Any], required: Iterable[str]) -> Check:
        """Report the first required form field that is absent or blank.

        With require_parameters off only ROUTING_PARAMETERS are enforced.
        """
        if not self.validation.require_parameters:
            required = [name for name in required if name in ROUTING_PARAMETERS]

        missing = next((name for name in required if not request_data.get(name)), None)
        if missing is None:
            return OK
        return _fail("missing_parameter", parameter=missing)

    def validate_message_content(self, request_data: dict[str, Any]) -> Check:
        """A message needs a Body or at least one MediaUrl, unless require_parameters is off."""
        if not self.validation.require_parameters:
            return OK
        if request_data.get("Body") or request_data.get("MediaUrl"):
            return OK
        return _fail("missing_body")

    def validate_phone_number(self, number: str, field_name: str) -> Check:
        """Accept anything phonenumbers can parse as a possible E.164 number.

        Args:
            number: Value submitted in the form
            field_name: Form field it came from, e.g. 'To'
        """
        if not self.validation.validate_phone_format:
            return OK

        try:
            possible = phonenumbers.is_possible_number(phonenumbers.parse(number, None))
        except phonenumbers.NumberParseException:
            possible = False

        if possible:
            return OK
        return _fail("invalid_phone_number", field=field_name, number=number)
