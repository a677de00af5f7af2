"""Minimal TwiML interpretation for the voice answer webhook.

Only the verbs that decide what happens to the call next are understood.
Media verbs are consumed without effect, except Pause which adds to the
reported call duration. Gather never receives input from the mock, so its
nested verbs run and execution falls through to the next verb.
"""
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from urllib.parse import urljoin, urlsplit

HANGUP = "hangup"
REJECT = "reject"
REDIRECT = "redirect"
END = "end"


class TwimlError(ValueError):
    """Response body is not a TwiML document."""


@dataclass
class TwimlResult:
    """What the call should do after running a TwiML document."""

    action: str
    duration: int = 0
    reason: str | None = None
    redirect_url: str | None = None


def _pause_length(element: ET.Element) -> int:
    try:
        return max(int(element.get("length", "1")), 0)
    except ValueError:
        return 1


def _run(elements, base_url: str, result: TwimlResult) -> bool:
    """Run verbs in order. Returns True once a verb ends the document."""
    for element in elements:
        verb = element.tag
        if verb == "Pause":
            result.duration += _pause_length(element)
        elif verb == "Gather":
            if _run(list(element), base_url, result):
                return True
        elif verb == "Hangup":
            result.action = HANGUP
            return True
        elif verb == "Reject":
            result.action = REJECT
            result.reason = element.get("reason", "rejected")
            return True
        elif verb == "Redirect":
            target = (element.text or "").strip()
            if not target:
                raise TwimlError("Redirect without a URL")
            try:
                redirect_url = urljoin(base_url, target)
                urlsplit(redirect_url).port
            except ValueError as e:
                raise TwimlError(f"invalid Redirect URL {target!r}: {e}") from e
            result.action = REDIRECT
            result.redirect_url = redirect_url
            return True
    return False


def interpret(body: str, base_url: str = "") -> TwimlResult:
    """Interpret a TwiML document.

    Args:
        body: Response body returned by the answer webhook
        base_url: URL the document was fetched from, used for relative Redirects

    Returns:
        TwimlResult describing how the document ended

    Raises:
        TwimlError: If the body is not a <Response> document
    """
    try:
        root = ET.fromstring(body.strip())
    except ET.ParseError as e:
        raise TwimlError(f"invalid TwiML: {e}") from e

    if root.tag != "Response":
        raise TwimlError(f"expected <Response>, got <{root.tag}>")

    result = TwimlResult(action=END)
    _run(list(root), base_url, result)
    return result
