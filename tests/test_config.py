# EspoCRM MCP Server
# File: tests/test_config.py
# Version: v1

"""Tests for environment-driven configuration."""

from __future__ import annotations

import pytest

from espocrm_mcp.config import DEFAULT_DISPLAY_NAME_FIELDS, EspoConfig

_ENV_VARS = [
    "ESPOCRM_URL",
    "ESPOCRM_API_KEY",
    "ESPOCRM_AUTH_METHOD",
    "ESPOCRM_SECRET_KEY",
    "ESPOCRM_MOCK_MODE",
    "ESPOCRM_VERIFY_TLS",
    "REQUEST_TIMEOUT",
    "LOG_LEVEL",
    "MCP_TRANSPORT",
    "MCP_HTTP_HOST",
    "MCP_HTTP_PORT",
    "MCP_HTTP_MODE",
    "MCP_SESSION_TIMEOUT_SECONDS",
    "MCP_SWEEP_INTERVAL_SECONDS",
    "MCP_KEEPALIVE_SECONDS",
    "MCP_MAX_SESSIONS",
    "ESPOCRM_DISPLAY_NAME_FIELDS",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_when_environment_is_empty() -> None:
    config = EspoConfig.from_env()

    assert config.base_url is None
    assert config.api_key is None
    assert config.auth_method == "apikey"
    assert config.mock_mode is False
    assert config.verify_tls is True
    assert config.request_timeout == 30
    assert config.transport == "stdio"
    assert config.http_host == "0.0.0.0"
    assert config.http_port == 3000
    assert config.http_mode == "session"
    assert config.session_timeout_seconds == 1800
    assert config.sweep_interval_seconds == 300
    assert config.keepalive_seconds == 30
    assert config.max_sessions == 1000
    assert config.display_name_fields == DEFAULT_DISPLAY_NAME_FIELDS


def test_values_are_parsed_and_clamped(monkeypatch) -> None:
    monkeypatch.setenv("ESPOCRM_URL", " https://crm.example.com ")
    monkeypatch.setenv("ESPOCRM_AUTH_METHOD", "HMAC")
    monkeypatch.setenv("ESPOCRM_MOCK_MODE", "yes")
    monkeypatch.setenv("ESPOCRM_VERIFY_TLS", "0")
    monkeypatch.setenv("REQUEST_TIMEOUT", "99999")
    monkeypatch.setenv("MCP_HTTP_PORT", "not-a-number")
    monkeypatch.setenv("MCP_HTTP_MODE", "stateless")
    monkeypatch.setenv("MCP_TRANSPORT", "carrier-pigeon")

    config = EspoConfig.from_env()

    assert config.base_url == "https://crm.example.com"
    assert config.auth_method == "hmac"
    assert config.mock_mode is True
    assert config.verify_tls is False
    assert config.request_timeout == 600
    assert config.http_port == 3000
    assert config.http_mode == "stateless"
    # Unknown choices fall back to the default.
    assert config.transport == "stdio"


def test_validate_reports_missing_url_and_key() -> None:
    problems = EspoConfig(base_url=None).validate(transport="stdio")

    assert any("ESPOCRM_URL" in p for p in problems)
    assert any("ESPOCRM_API_KEY" in p for p in problems)


def test_validate_http_does_not_need_a_key() -> None:
    config = EspoConfig(base_url="https://crm.example.com")

    assert config.validate(transport="http") == []


def test_validate_rejects_bad_url_and_missing_hmac_secret() -> None:
    config = EspoConfig(base_url="crm.example.com", api_key="k", auth_method="hmac")

    problems = config.validate(transport="stdio")

    assert any("valid URL" in p for p in problems)
    assert any("ESPOCRM_SECRET_KEY" in p for p in problems)


def test_mock_mode_skips_validation() -> None:
    assert EspoConfig(base_url=None, mock_mode=True).validate(transport="stdio") == []
