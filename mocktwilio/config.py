"""Configuration loader and validator for the Twilio mock server."""
import os
from pathlib import Path
from typing import Any

import yaml

from mocktwilio.models import CallStatus, MessageStatus, MsgService, Number


class ConfigurationError(Exception):
    """Raised when configuration is invalid."""
    pass


class ServerConfig:
    """HTTP listener configuration."""

    def __init__(self, data: dict[str, Any]):
        self.host: str = data.get("host", "0.0.0.0")
        self.port: int = data.get("port", 8080)


class ValidationConfig:
    """Validation settings configuration."""

    def __init__(self, data: dict[str, Any]):
        self.require_auth: bool = data.get("require_auth", True)
        self.validate_phone_format: bool = data.get("validate_phone_format", True)
        self.require_parameters: bool = data.get("require_parameters", True)


class LifecycleConfig:
    """Timing of the simulated delivery lifecycle and its webhooks."""

    def __init__(self, data: dict[str, Any]):
        self.delay_seconds: float = data.get("delay_seconds", 1.0)
        self.webhook_timeout_seconds: float = data.get("webhook_timeout_seconds", 10.0)
        self.retry_attempts: int = data.get("retry_attempts", 1)
        self.retry_delay_seconds: float = data.get("retry_delay_seconds", 5.0)
        self.max_redirects: int = data.get("max_redirects", 10)

        if self.delay_seconds < 0:
            raise ConfigurationError(f"delay_seconds must be >= 0, got: {self.delay_seconds}")
        if self.retry_attempts < 1:
            raise ConfigurationError(f"retry_attempts must be >= 1, got: {self.retry_attempts}")


class OutcomesConfig:
    """Terminal states to drive messages and calls to, per destination number."""

    def __init__(self, data: dict[str, Any]):
        self.default_message: str = data.get("default_message", MessageStatus.DELIVERED)
        self.default_call: str = data.get("default_call", CallStatus.COMPLETED)
        self.messages: dict[str, str] = data.get("messages", {}) or {}
        self.calls: dict[str, str] = data.get("calls", {}) or {}

        for status in [self.default_message, *self.messages.values()]:
            if status not in MessageStatus.TERMINAL:
                raise ConfigurationError(
                    f"message outcome must be one of {sorted(MessageStatus.TERMINAL)}, got: {status}"
                )
        for status in [self.default_call, *self.calls.values()]:
            if status not in CallStatus.TERMINAL:
                raise ConfigurationError(
                    f"call outcome must be one of {sorted(CallStatus.TERMINAL)}, got: {status}"
                )


class TwilioConfig:
    """Twilio provider configuration."""

    def __init__(self, data: dict[str, Any]):
        self.account_sid: str = data.get("account_sid", "")
        self.auth_token: str = data.get("auth_token", "")

        self.validation = ValidationConfig(data.get("validation", {}))
        self.lifecycle = LifecycleConfig(data.get("lifecycle", {}))
        self.outcomes = OutcomesConfig(data.get("outcomes", {}))

        # Numbers and messaging services registered at startup
        self.numbers: list[Number] = [
            Number(
                number=item["number"],
                voice_webhook_url=item.get("voice_webhook_url"),
                sms_webhook_url=item.get("sms_webhook_url"),
            )
            for item in data.get("numbers", [])
        ]
        self.messaging_services: list[MsgService] = [
            MsgService(
                id=item["id"],
                numbers=list(item.get("numbers", [])),
                sms_webhook_url=item.get("sms_webhook_url"),
            )
            for item in data.get("messaging_services", [])
        ]

    def validate(self) -> None:
        """Validate Twilio configuration."""
        if not self.account_sid:
            raise ConfigurationError("Twilio account_sid is required")
        if self.validation.require_auth and not self.auth_token:
            raise ConfigurationError(
                "Twilio auth_token must be set when require_auth is enabled"
            )


class DatabaseConfig:
    """Lifecycle table storage configuration."""

    def __init__(self, data: dict[str, Any]):
        self.path: str = data.get("path", ":memory:")


class TemplatesConfig:
    """Templates configuration. None selects the templates shipped with the package."""

    def __init__(self, data: dict[str, Any]):
        self.path: str | None = data.get("path")


class Config:
    """Main configuration class."""

    def __init__(self, data: dict[str, Any]):
        """Build configuration from a parsed mapping.

        Args:
            data: Configuration mapping, as loaded from YAML
        """
        if not data:
            raise ConfigurationError("Configuration is empty")

        self.server = ServerConfig(data.get("server", {}))
        self.database = DatabaseConfig(data.get("database", {}))
        self.templates = TemplatesConfig(data.get("templates", {}))

        self.provider: str = data.get("provider", "twilio")
        if self.provider != "twilio":
            raise ConfigurationError(
                f"Unsupported provider: {self.provider}. Only 'twilio' is supported."
            )

        twilio_data = data.get("twilio", {})
        if not twilio_data:
            raise ConfigurationError("Twilio configuration section is missing")

        try:
            self.twilio = TwilioConfig(twilio_data)
        except KeyError as e:
            raise ConfigurationError(f"Missing required key: {e}") from e

        self.validate()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        return cls(data)

    @classmethod
    def from_file(cls, config_path: str | None = None) -> "Config":
        """Load configuration from YAML file.

        Args:
            config_path: Path to config file. Defaults to $CONFIG_PATH, then ./config.yaml
        """
        if config_path is None:
            config_path = os.getenv("CONFIG_PATH", "./config.yaml")

        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f)

        if not data:
            raise ConfigurationError("Config file is empty")

        config = cls(data)
        config.config_path = path
        return config

    def validate(self) -> None:
        """Validate entire configuration."""
        self.twilio.validate()

        if self.templates.path is not None:
            templates_path = Path(self.templates.path)
            if not templates_path.exists():
                raise ConfigurationError(
                    f"Templates directory not found: {self.templates.path}"
                )

        if self.database.path != ":memory:":
            Path(self.database.path).parent.mkdir(parents=True, exist_ok=True)


def load_config(config_path: str | None = None) -> Config:
    """Load and return configuration.

    Args:
        config_path: Optional path to config file

    Returns:
        Config object

    Raises:
        ConfigurationError: If configuration is invalid
    """
    return Config.from_file(config_path)
