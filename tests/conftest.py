"""Shared pytest fixtures for mock server tests."""
import base64
import copy

import httpx
import pytest
import pytest_asyncio
import yaml

from mocktwilio.callbacks import CallbackHandler
from mocktwilio.config import Config
from mocktwilio.main import create_app
from mocktwilio.server import MockServer
from mocktwilio.storage import Storage

ACCOUNT_SID = "AC" + "x" * 32
AUTH_TOKEN = "test_auth_token_12345"


@pytest.fixture
def test_config_dict():
    """Return a test configuration dictionary."""
    return {
        "server": {
            "host": "0.0.0.0",
            "port": 8080
        },
        "provider": "twilio",
        "twilio": {
            "account_sid": ACCOUNT_SID,
            "auth_token": AUTH_TOKEN,
            "validation": {
                "require_auth": True,
                "validate_phone_format": True,
                "require_parameters": True
            },
            "lifecycle": {
                "delay_seconds": 0,
                "webhook_timeout_seconds": 1,
                "retry_attempts": 1,
                "retry_delay_seconds": 0,
                "max_redirects": 3
            },
            "outcomes": {
                "default_message": "delivered",
                "default_call": "completed",
                "messages": {"+15559999999": "failed"},
                "calls": {"+15557777777": "busy"}
            }
        },
        "database": {
            "path": ":memory:"
        }
    }


@pytest.fixture
def test_config_file(tmp_path, test_config_dict):
    """Create a temporary test configuration file."""
    config_file = tmp_path / "config.yaml"
    with open(config_file, "w") as f:
        yaml.dump(test_config_dict, f)

    return str(config_file)


@pytest.fixture
def test_config(test_config_dict):
    """Create a test Config instance."""
    return Config.from_dict(copy.deepcopy(test_config_dict))


@pytest.fixture
def test_storage():
    """Create an in-memory Storage instance."""
    storage = Storage(":memory:")
    yield storage
    storage.close()


@pytest.fixture
def errors():
    """Collects everything reported to the error callback."""
    return []


@pytest.fixture
def callback_handler(test_config, test_storage, errors):
    """CallbackHandler wired to the test storage and error list."""
    return CallbackHandler(test_config.twilio.lifecycle, test_storage, errors.append)


@pytest_asyncio.fixture
async def server(test_config, errors):
    """A started MockServer, closed after the test."""
    server = MockServer(test_config, on_error=errors.append)
    await server.start()
    yield server
    await server.close()


@pytest_asyncio.fixture
async def client(server):
    """HTTP client talking to the server's ASGI app in-process."""
    app = create_app(server)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://mock.twilio") as client:
        yield client


@pytest.fixture
def mock_basic_auth():
    """Valid basic auth header."""
    credentials = base64.b64encode(
        f"{ACCOUNT_SID}:{AUTH_TOKEN}".encode()
    ).decode()
    return f"Basic {credentials}"
