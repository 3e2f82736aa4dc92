# EspoCRM MCP Server
# File: client.py
# Version: v1
"""High-level client for the EspoCRM REST API (v1).

Implements:

- test_connection() via App/user
- fetch_metadata() / fetch_translations() for the schema catalog
- create / get_by_id / update / delete / search for any entity type
- link / unlink / get_related for relationships
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx
from httpx import HTTPStatusError, RequestError

from .auth import EspoAuth
from .config import EspoConfig
from .models import EspoAPIError, FilterPredicate


def _format_param(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode_where(where: Sequence[FilterPredicate]) -> List[Tuple[str, str]]:
    """Flatten predicates into EspoCRM's bracketed query parameters.

    [{"type": "in", "attribute": "status", "value": ["A", "B"]}] becomes
    where[0][type]=in, where[0][attribute]=status, where[0][value][]=A, ...
    """
    params: List[Tuple[str, str]] = []
    for index, predicate in enumerate(where):
        prefix = f"where[{index}]"
        params.append((f"{prefix}[type]", predicate.type))
        params.append((f"{prefix}[attribute]", predicate.attribute))
        if isinstance(predicate.value, (list, tuple)):
            for item in predicate.value:
                params.append((f"{prefix}[value][]", _format_param(item)))
        else:
            params.append((f"{prefix}[value]", _format_param(predicate.value)))
    return params


@dataclass
class EspoClient:
    """Wrapper around the EspoCRM REST API for one API user."""

    config: EspoConfig
    auth: EspoAuth

    # Injected in tests (httpx.MockTransport); None means real network I/O.
    transport: Optional[httpx.AsyncBaseTransport] = None

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        if not self.config.base_url:
            raise RuntimeError(
                "ESPOCRM_URL is not set. Please configure it before calling the API."
            )
        base_url = self.config.base_url.rstrip("/")
        return f"{base_url}/api/v1/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        params: Iterable[Tuple[str, str]] | Dict[str, Any] | None = None,
        json_body: Any = None,
    ) -> Any:
        """Make an authenticated request and return the decoded JSON body."""
        url = self._url(path)
        headers = {
            "Accept": "application/json",
            **self.auth.headers(method, path),
        }
        if json_body is not None:
            headers["Content-Type"] = "application/json"

        async with httpx.AsyncClient(
            timeout=float(self.config.request_timeout),
            verify=self.config.verify_tls,
            transport=self.transport,
        ) as http_client:
            try:
                response = await http_client.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    headers=headers,
                )
            except RequestError as exc:
                raise EspoAPIError(
                    f"Error calling EspoCRM API at '{url}': {exc}"
                ) from exc

            try:
                response.raise_for_status()
            except HTTPStatusError as exc:
                status = response.status_code
                reason = response.headers.get("X-Status-Reason")
                body_preview = reason or response.text[:500]
                raise EspoAPIError(
                    f"EspoCRM {method} {path} failed (HTTP {status}). "
                    f"Response snippet: {body_preview}",
                    status_code=status,
                ) from exc

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            # DELETE and link endpoints answer with a bare "true".
            return response.text

    # ------------------------------------------------------------------
    # Connection & schema
    # ------------------------------------------------------------------

    async def test_connection(self) -> Dict[str, Any]:
        """Check credentials; returns {"success", "user", "version"}."""
        data = await self._request("GET", "App/user")
        if not isinstance(data, dict):
            raise EspoAPIError("Unexpected response from App/user: expected JSON object.")

        user = data.get("user") if isinstance(data.get("user"), dict) else {}
        settings = data.get("settings") if isinstance(data.get("settings"), dict) else {}
        version = settings.get("version") or data.get("version")
        return {"success": True, "user": user, "version": version}

    async def fetch_metadata(self) -> Dict[str, Any]:
        data = await self._request("GET", "Metadata")
        if not isinstance(data, dict):
            raise EspoAPIError("Unexpected response from Metadata: expected JSON object.")
        return data

    async def fetch_translations(self) -> Dict[str, Any]:
        data = await self._request("GET", "I18n", params={"default": "true"})
        if not isinstance(data, dict):
            raise EspoAPIError("Unexpected response from I18n: expected JSON object.")
        return data

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def create(self, entity_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        result = await self._request("POST", entity_type, json_body=data)
        return result if isinstance(result, dict) else {}

    async def get_by_id(
        self,
        entity_type: str,
        record_id: str,
        select: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        params = {"select": ",".join(select)} if select else None
        result = await self._request("GET", f"{entity_type}/{record_id}", params=params)
        return result if isinstance(result, dict) else {}

    async def update(
        self, entity_type: str, record_id: str, data: Dict[str, Any]
    ) -> Dict[str, Any]:
        result = await self._request("PUT", f"{entity_type}/{record_id}", json_body=data)
        return result if isinstance(result, dict) else {}

    async def delete(self, entity_type: str, record_id: str) -> bool:
        await self._request("DELETE", f"{entity_type}/{record_id}")
        return True

    async def search(
        self,
        entity_type: str,
        where: Optional[Sequence[FilterPredicate]] = None,
        select: Optional[Sequence[str]] = None,
        max_size: int = 20,
        offset: int = 0,
        order_by: Optional[str] = None,
        order: str = "asc",
    ) -> Dict[str, Any]:
        """List records; returns {"total": int, "list": [...]}."""
        params: List[Tuple[str, str]] = [
            ("maxSize", str(int(max_size))),
            ("offset", str(int(offset))),
        ]
        if order_by:
            params.append(("orderBy", order_by))
            params.append(("order", order))
        if select:
            params.append(("select", ",".join(select)))
        if where:
            params.extend(encode_where(where))

        result = await self._request("GET", entity_type, params=params)
        return _as_list_result(result)

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def link(
        self,
        entity_type: str,
        record_id: str,
        link: str,
        related_ids: Sequence[str],
    ) -> bool:
        await self._request(
            "POST", f"{entity_type}/{record_id}/{link}", json_body={"ids": list(related_ids)}
        )
        return True

    async def unlink(
        self,
        entity_type: str,
        record_id: str,
        link: str,
        related_ids: Sequence[str],
    ) -> bool:
        await self._request(
            "DELETE", f"{entity_type}/{record_id}/{link}", json_body={"ids": list(related_ids)}
        )
        return True

    async def get_related(
        self,
        entity_type: str,
        record_id: str,
        link: str,
        max_size: int = 50,
        offset: int = 0,
        select: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        params: List[Tuple[str, str]] = [
            ("maxSize", str(int(max_size))),
            ("offset", str(int(offset))),
        ]
        if select:
            params.append(("select", ",".join(select)))
        result = await self._request("GET", f"{entity_type}/{record_id}/{link}", params=params)
        return _as_list_result(result)


def _as_list_result(result: Any) -> Dict[str, Any]:
    if not isinstance(result, dict):
        return {"total": 0, "list": []}
    rows = result.get("list")
    rows = [r for r in rows if isinstance(r, dict)] if isinstance(rows, list) else []
    total = result.get("total")
    if not isinstance(total, int) or total < 0:
        total = len(rows)
    return {"total": total, "list": rows}
