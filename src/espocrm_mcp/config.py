# EspoCRM MCP Server
# File: config.py
# Version: v1

"""Configuration loading for the EspoCRM MCP Server."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import sys
from urllib.parse import urlparse

AUTH_METHODS = ("apikey", "hmac")
TRANSPORTS = ("stdio", "http")
HTTP_MODES = ("session", "stateless")
LOG_LEVELS = ("error", "warn", "info", "debug")

DEFAULT_DISPLAY_NAME_FIELDS = "name,firstName+lastName,title,subject"


def _parse_bool_env(name: str, default: bool = False) -> bool:
    """Parse a boolean-like environment variable.

    Accepts 1/0, true/false, yes/no, on/off (case-insensitive).
    """
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on"}


def _parse_int_env(
    name: str,
    default: int,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int:
    """Parse an int environment variable with clamping and safe fallback."""
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        value = int(default)
    else:
        try:
            value = int(str(raw).strip())
        except ValueError:
            value = int(default)

    if min_value is not None and value < min_value:
        value = min_value
    if max_value is not None and value > max_value:
        value = max_value

    return value


def _parse_choice_env(name: str, default: str, choices: tuple[str, ...]) -> str:
    """Parse an enumerated environment variable, falling back to default."""
    raw = (os.getenv(name) or "").strip().lower()
    if raw in choices:
        return raw
    return default


@dataclass
class EspoConfig:
    """Configuration values required to talk to EspoCRM and serve MCP.

    The API key is optional here: in HTTP mode it travels per request in the
    ``x-api-key`` header instead of the environment.
    """

    base_url: str | None
    api_key: str | None = None
    auth_method: str = "apikey"
    secret_key: str | None = None
    mock_mode: bool = False

    verify_tls: bool = True
    request_timeout: int = 30
    log_level: str = "info"

    # Transport
    transport: str = "stdio"
    http_host: str = "0.0.0.0"
    http_port: int = 3000
    http_mode: str = "session"

    # Session lifetime
    session_timeout_seconds: int = 1800
    sweep_interval_seconds: int = 300
    keepalive_seconds: int = 30
    max_sessions: int = 1000

    display_name_fields: str = DEFAULT_DISPLAY_NAME_FIELDS

    @classmethod
    def from_env(cls) -> "EspoConfig":
        """Create configuration from environment variables."""
        base_url = (os.getenv("ESPOCRM_URL") or "").strip() or None
        api_key = os.getenv("ESPOCRM_API_KEY") or None
        secret_key = os.getenv("ESPOCRM_SECRET_KEY") or None

        auth_method = _parse_choice_env("ESPOCRM_AUTH_METHOD", "apikey", AUTH_METHODS)
        mock_mode = _parse_bool_env("ESPOCRM_MOCK_MODE", default=False)
        verify_tls = _parse_bool_env("ESPOCRM_VERIFY_TLS", default=True)

        request_timeout = _parse_int_env(
            "REQUEST_TIMEOUT", default=30, min_value=1, max_value=600
        )
        log_level = _parse_choice_env("LOG_LEVEL", "info", LOG_LEVELS)

        transport = _parse_choice_env("MCP_TRANSPORT", "stdio", TRANSPORTS)
        http_host = (os.getenv("MCP_HTTP_HOST") or "").strip() or "0.0.0.0"
        http_port = _parse_int_env("MCP_HTTP_PORT", default=3000, min_value=1, max_value=65535)
        http_mode = _parse_choice_env("MCP_HTTP_MODE", "session", HTTP_MODES)

        session_timeout_seconds = _parse_int_env(
            "MCP_SESSION_TIMEOUT_SECONDS", default=1800, min_value=1, max_value=86400
        )
        sweep_interval_seconds = _parse_int_env(
            "MCP_SWEEP_INTERVAL_SECONDS", default=300, min_value=1, max_value=86400
        )
        keepalive_seconds = _parse_int_env(
            "MCP_KEEPALIVE_SECONDS", default=30, min_value=1, max_value=3600
        )
        max_sessions = _parse_int_env(
            "MCP_MAX_SESSIONS", default=1000, min_value=1, max_value=100000
        )

        display_name_fields = (
            os.getenv("ESPOCRM_DISPLAY_NAME_FIELDS") or ""
        ).strip() or DEFAULT_DISPLAY_NAME_FIELDS

        return cls(
            base_url=base_url,
            api_key=api_key,
            auth_method=auth_method,
            secret_key=secret_key,
            mock_mode=mock_mode,
            verify_tls=verify_tls,
            request_timeout=request_timeout,
            log_level=log_level,
            transport=transport,
            http_host=http_host,
            http_port=http_port,
            http_mode=http_mode,
            session_timeout_seconds=session_timeout_seconds,
            sweep_interval_seconds=sweep_interval_seconds,
            keepalive_seconds=keepalive_seconds,
            max_sessions=max_sessions,
            display_name_fields=display_name_fields,
        )

    def validate(self, transport: str | None = None) -> list[str]:
        """Return a list of configuration problems (empty when usable)."""
        transport = transport or self.transport
        errors: list[str] = []

        if self.mock_mode:
            return errors

        if not self.base_url:
            errors.append("ESPOCRM_URL environment variable is required")
        else:
            parsed = urlparse(self.base_url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                errors.append("ESPOCRM_URL must be a valid URL")

        # HTTP transports receive the key per request.
        if not self.api_key and transport == "stdio":
            errors.append(
                "ESPOCRM_API_KEY environment variable is required for stdio transport"
            )

        if self.auth_method == "hmac" and not self.secret_key:
            errors.append("ESPOCRM_SECRET_KEY is required when using HMAC authentication")

        return errors


def configure_logging(level: str = "info") -> None:
    """Send log records to stderr; stdout is reserved for the stdio protocol."""
    numeric = {
        "error": logging.ERROR,
        "warn": logging.WARNING,
        "info": logging.INFO,
        "debug": logging.DEBUG,
    }.get(level, logging.INFO)

    logging.basicConfig(
        level=numeric,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
