"""FastAPI application for the Twilio mock server."""
import base64
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import phonenumbers
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from mocktwilio.config import load_config
from mocktwilio.errors import MockTwilioError
from mocktwilio.models import MESSAGING_SERVICE_PREFIX
from mocktwilio.providers.twilio import TwilioProvider
from mocktwilio.server import MockServer

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 1000


def extract_basic_auth(authorization: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Extract username and password from Basic Auth header.

    Args:
        authorization: Authorization header value

    Returns:
        Tuple of (username, password) or (None, None)
    """
    if not authorization:
        return None, None

    if not authorization.startswith("Basic "):
        return None, None

    try:
        credentials = base64.b64decode(authorization[6:]).decode("utf-8")
        username, password = credentials.split(":", 1)
        return username, password
    except ValueError:
        return None, None


def setup_api_routes(router: APIRouter, server: MockServer) -> None:
    """Register the Twilio REST routes on router.

    Args:
        router: Router mounted at each API prefix
        server: Mock server the routes drive
    """
    provider = TwilioProvider(server.config.twilio)
    engine = server.template_engine

    def error_response(error: dict[str, Any]) -> JSONResponse:
        return JSONResponse(status_code=error["http_status"], content=engine.render_error(error))

    def authenticate(request: Request, account_sid: str | None = None) -> dict[str, Any] | None:
        """Return the error to send back, or None if the request may proceed."""
        username, password = extract_basic_auth(request.headers.get("authorization"))
        is_valid, error = provider.validate_auth(username, password)
        if is_valid and account_sid is not None:
            is_valid, error = provider.validate_account(account_sid, request.url.path)
        return error

    @router.post("/Accounts/{account_sid}/Messages.json")
    async def send_message(account_sid: str, request: Request):
        """Twilio-compatible SMS sending endpoint."""
        error = authenticate(request, account_sid)
        if error:
            return error_response(error)

        # Twilio sends form-encoded data; MediaUrl may repeat
        form_data = await request.form()
        request_data = dict(form_data)
        media_urls = form_data.getlist("MediaUrl")
        if not request_data.get("From") and request_data.get("MessagingServiceSid"):
            request_data["From"] = request_data["MessagingServiceSid"]

        is_valid, error = provider.validate_parameters(request_data, ["To", "From"])
        if not is_valid:
            return error_response(error)

        is_valid, error = provider.validate_message_content(request_data)
        if not is_valid:
            return error_response(error)

        # A messaging service SID stands in for the From number
        sender = request_data["From"]
        fields = ["To"] if sender.startswith(MESSAGING_SERVICE_PREFIX) else ["From", "To"]
        for field in fields:
            is_valid, error = provider.validate_phone_number(request_data[field], field)
            if not is_valid:
                return error_response(error)

        message = server.send_message(
            from_=sender,
            to=request_data["To"],
            body=request_data.get("Body", ""),
            media_urls=media_urls,
            status_callback=request_data.get("StatusCallback") or None,
        )

        response_data = engine.render_response(
            "message.json", engine.create_message_context(message)
        )
        return JSONResponse(status_code=201, content=response_data)

    @router.post("/Accounts/{account_sid}/Calls.json")
    async def make_call(account_sid: str, request: Request):
        """Twilio-compatible call making endpoint."""
        error = authenticate(request, account_sid)
        if error:
            return error_response(error)

        form_data = await request.form()
        request_data = dict(form_data)

        is_valid, error = provider.validate_parameters(request_data, ["To", "From", "Url"])
        if not is_valid:
            return error_response(error)

        for field in ["From", "To"]:
            is_valid, error = provider.validate_phone_number(request_data[field], field)
            if not is_valid:
                return error_response(error)

        call = server.start_call(
            from_=request_data["From"],
            to=request_data["To"],
            url=request_data["Url"],
            status_callback=request_data.get("StatusCallback") or None,
        )

        response_data = engine.render_response("call.json", engine.create_call_context(call))
        return JSONResponse(status_code=201, content=response_data)

    def list_response(request: Request, key: str, fetch, render) -> JSONResponse:
        """One page of a list resource, shaped like Twilio's paging envelope.

        PageSize (1 to MAX_PAGE_SIZE) and Page come from the query string.
        One extra row is fetched to decide whether a next page exists.
        """
        try:
            page_size = int(request.query_params.get("PageSize", DEFAULT_PAGE_SIZE))
            page = int(request.query_params.get("Page", 0))
        except ValueError:
            return error_response({
                "error_type": "invalid_parameter",
                "http_status": 400,
                "message": "PageSize and Page must be integers",
            })
        if not 1 <= page_size <= MAX_PAGE_SIZE or page < 0:
            return error_response({
                "error_type": "invalid_parameter",
                "http_status": 400,
                "message": f"PageSize must be between 1 and {MAX_PAGE_SIZE} and Page must not be negative",
            })

        start = page * page_size
        rows = fetch(page_size + 1, start)
        has_next = len(rows) > page_size
        rows = rows[:page_size]

        def page_uri(number: int) -> str:
            return f"{request.url.path}?PageSize={page_size}&Page={number}"

        return JSONResponse(content={
            key: [render(row) for row in rows],
            "start": start,
            "end": start + len(rows) - 1 if rows else start,
            "page": page,
            "page_size": page_size,
            "uri": page_uri(page),
            "first_page_uri": page_uri(0),
            "previous_page_uri": page_uri(page - 1) if page > 0 else None,
            "next_page_uri": page_uri(page + 1) if has_next else None,
        })

    @router.get("/Accounts/{account_sid}/Messages.json")
    async def list_messages(account_sid: str, request: Request):
        """Messages, newest first."""
        error = authenticate(request, account_sid)
        if error:
            return error_response(error)

        return list_response(
            request,
            "messages",
            server.list_messages,
            lambda m: engine.render_response("message.json", engine.create_message_context(m)),
        )

    @router.get("/Accounts/{account_sid}/Calls.json")
    async def list_calls(account_sid: str, request: Request):
        """Calls, newest first."""
        error = authenticate(request, account_sid)
        if error:
            return error_response(error)

        return list_response(
            request,
            "calls",
            server.list_calls,
            lambda c: engine.render_response("call.json", engine.create_call_context(c)),
        )

    @router.get("/Accounts/{account_sid}/Messages/{message_sid}.json")
    async def get_message(account_sid: str, message_sid: str, request: Request):
        """Current state of a message."""
        error = authenticate(request, account_sid)
        if error:
            return error_response(error)

        message = server.message(message_sid)
        return engine.render_response("message.json", engine.create_message_context(message))

    @router.get("/Accounts/{account_sid}/Calls/{call_sid}.json")
    async def get_call(account_sid: str, call_sid: str, request: Request):
        """Current state of a call."""
        error = authenticate(request, account_sid)
        if error:
            return error_response(error)

        call = server.call(call_sid)
        return engine.render_response("call.json", engine.create_call_context(call))


def setup_lookup_routes(app: FastAPI, server: MockServer) -> None:
    """Register the Lookup v1 phone number route."""
    provider = TwilioProvider(server.config.twilio)
    engine = server.template_engine

    @app.get("/v1/PhoneNumbers/{phone_number}")
    async def lookup_phone_number(phone_number: str, request: Request):
        """Formats for a number, plus carrier info when Type=carrier."""
        username, password = extract_basic_auth(request.headers.get("authorization"))
        is_valid, error = provider.validate_auth(username, password)
        if not is_valid:
            return JSONResponse(status_code=error["http_status"], content=engine.render_error(error))

        try:
            parsed = phonenumbers.parse(phone_number, None)
        except phonenumbers.NumberParseException:
            error = {"error_type": "not_found", "http_status": 404, "path": request.url.path}
            return JSONResponse(status_code=404, content=engine.render_error(error))

        e164 = phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)
        types = request.query_params.getlist("Type")
        context = engine.create_lookup_context(
            phone_number=e164,
            country_code=phonenumbers.region_code_for_number(parsed),
            national_format=phonenumbers.format_number(
                parsed, phonenumbers.PhoneNumberFormat.NATIONAL
            ),
            carrier_info=server.carrier_info(e164) if "carrier" in types else None,
        )
        return engine.render_response("lookup.json", context)


def create_app(server: MockServer) -> FastAPI:
    """Build the ASGI app. Its lifespan starts and closes the server.

    Args:
        server: Mock server the app serves

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await server.start()
        try:
            yield
        finally:
            await server.close()

    app = FastAPI(
        title="Twilio Mock Server",
        description="Mock server for Twilio SMS/Call APIs",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.server = server

    @app.exception_handler(MockTwilioError)
    async def mock_twilio_error_handler(request: Request, exc: MockTwilioError):
        error = exc.to_error()
        error.setdefault("path", request.url.path)
        logger.info(f"{request.method} {request.url.path} rejected: {exc.message}")
        return JSONResponse(
            status_code=exc.http_status,
            content=server.template_engine.render_error(error),
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint for Docker and monitoring."""
        return {
            "status": "healthy",
            "version": VERSION,
            "provider": server.config.provider,
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "statistics": server.statistics(),
        }

    router = APIRouter()
    setup_api_routes(router, server)
    app.include_router(router, prefix="/2010-04-01")
    app.include_router(router)
    setup_lookup_routes(app, server)

    return app


def main() -> None:
    """Run the mock server with configuration from $CONFIG_PATH or ./config.yaml."""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format='%(levelname)s:\t%(name)s - %(message)s'
    )

    config = load_config()
    server = MockServer(config)
    uvicorn.run(
        create_app(server),
        host=config.server.host,
        port=config.server.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
