# EspoCRM MCP Server
# File: auth.py
# Version: v1

"""Request signing for the EspoCRM REST API (API key or HMAC)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional
import base64
import hashlib
import hmac

from .config import EspoConfig


@dataclass
class EspoAuth:
    """Builds authentication headers for an API user.

    EspoCRM accepts either a plain ``X-Api-Key`` header or an HMAC signature
    sent as ``X-Hmac-Authorization: base64(key:hex(hmac_sha256(secret,
    "METHOD /path")))``, where the path is relative to ``/api/v1/``.
    """

    api_key: str
    method: str = "apikey"
    secret_key: Optional[str] = None

    @classmethod
    def from_config(cls, config: EspoConfig, api_key: str | None = None) -> "EspoAuth":
        """Create auth for the configured key, or for a per-request key."""
        key = api_key or config.api_key
        if not key:
            raise RuntimeError(
                "EspoCRM API key is not configured. "
                "Set ESPOCRM_API_KEY or send the x-api-key header."
            )
        if config.auth_method == "hmac" and not config.secret_key:
            raise RuntimeError(
                "HMAC authentication requires ESPOCRM_SECRET_KEY to be set."
            )
        return cls(api_key=key, method=config.auth_method, secret_key=config.secret_key)

    def headers(self, http_method: str, path: str) -> Dict[str, str]:
        """Return the auth headers for one request."""
        if self.method != "hmac":
            return {"X-Api-Key": self.api_key}

        message = f"{http_method.upper()} /{path.lstrip('/')}"
        digest = hmac.new(
            (self.secret_key or "").encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        raw = f"{self.api_key}:{digest}"
        token = base64.b64encode(raw.encode("utf-8")).decode("ascii")
        return {"X-Hmac-Authorization": token}
