# EspoCRM MCP Server
# File: mock.py
# Version: v1

"""In-memory stand-in for EspoClient.

Activated when ESPOCRM_MOCK_MODE is truthy. Implements every client method
the catalog, router and utility tools use, so the server can be demoed and
tested without a running EspoCRM instance.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from .config import EspoConfig
from .models import EspoAPIError, FilterPredicate


MOCK_METADATA: Dict[str, Any] = {
    "entityDefs": {
        "Account": {
            "fields": {
                "name": {"type": "varchar", "required": True, "maxLength": 249},
                "website": {"type": "url"},
                "emailAddress": {"type": "email"},
                "phoneNumber": {"type": "phone"},
                "type": {
                    "type": "enum",
                    "options": ["", "Customer", "Investor", "Partner", "Reseller"],
                },
                "industry": {"type": "enum", "options": ["", "Finance", "Retail", "Software"]},
                "billingAddressCity": {"type": "varchar", "maxLength": 100},
                "description": {"type": "text"},
                "assignedUser": {"type": "link"},
                "teams": {"type": "linkMultiple"},
                "createdAt": {"type": "datetime", "readOnly": True},
                "modifiedAt": {"type": "datetime", "readOnly": True},
            },
            "links": {
                "contacts": {"type": "hasMany", "entity": "Contact", "foreign": "account"},
                "assignedUser": {"type": "belongsTo", "entity": "User"},
                "teams": {"type": "hasMany", "entity": "Team"},
            },
        },
        "Contact": {
            "fields": {
                "firstName": {"type": "varchar", "maxLength": 100},
                "lastName": {"type": "varchar", "required": True, "maxLength": 100},
                "emailAddress": {"type": "email"},
                "phoneNumber": {"type": "phone"},
                "title": {"type": "varchar", "maxLength": 100},
                "birthday": {"type": "date"},
                "account": {"type": "link"},
                "description": {"type": "text"},
                "createdAt": {"type": "datetime", "readOnly": True},
            },
            "links": {
                "account": {"type": "belongsTo", "entity": "Account", "foreign": "contacts"},
            },
        },
        "CProduct": {
            "fields": {
                "name": {"type": "varchar", "required": True, "maxLength": 150},
                "sku": {"type": "varchar", "maxLength": 50},
                "price": {"type": "currency", "min": 0},
                "stock": {"type": "int", "min": 0, "max": 100000},
                "active": {"type": "bool"},
                "releaseDate": {"type": "date"},
                "description": {"type": "text"},
            },
            "links": {},
        },
    },
    "scopes": {
        "Account": {"entity": True},
        "Contact": {"entity": True},
        "CProduct": {"entity": True, "isCustom": True},
    },
}

MOCK_TRANSLATIONS: Dict[str, Any] = {
    "Account": {
        "fields": {
            "name": "Name",
            "website": "Website",
            "type": "Type",
            "billingAddressCity": "Billing City",
        },
        "tooltips": {"website": "Public website of the company"},
        "labels": {"Create Account": "Create Account"},
        "links": {"contacts": "Contacts", "teams": "Teams"},
        "options": {
            "type": {
                "Customer": "Customer",
                "Investor": "Investor",
                "Partner": "Partner",
                "Reseller": "Reseller",
            }
        },
    },
    "Contact": {
        "fields": {"firstName": "First Name", "lastName": "Last Name"},
        "labels": {"Create Contact": "Create Contact"},
        "links": {"account": "Account"},
    },
    "CProduct": {
        "fields": {"sku": "SKU", "price": "Price"},
        "tooltips": {"stock": "Units currently in the warehouse"},
    },
}


def _seed_records() -> Dict[str, Dict[str, Dict[str, Any]]]:
    return {
        "Account": {
            "acc-1": {"id": "acc-1", "name": "Acme Corporation", "type": "Customer",
                      "industry": "Software", "billingAddressCity": "Berlin"},
            "acc-2": {"id": "acc-2", "name": "Globex", "type": "Partner",
                      "industry": "Retail", "billingAddressCity": "Springfield"},
        },
        "Contact": {
            "con-1": {"id": "con-1", "firstName": "John", "lastName": "Smith",
                      "emailAddress": "john.smith@example.com", "accountId": "acc-1"},
        },
        "CProduct": {
            "prod-1": {"id": "prod-1", "name": "Widget Pro", "sku": "WP-1",
                       "price": 49.5, "active": True},
        },
    }


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _matches(record: Dict[str, Any], predicate: FilterPredicate) -> bool:
    actual = record.get(predicate.attribute)
    if predicate.type == "contains":
        return str(predicate.value).lower() in str(actual or "").lower()
    if predicate.type == "in":
        return str(actual) in {str(v) for v in predicate.value}
    if isinstance(predicate.value, (bool, int, float)):
        return actual == predicate.value
    return str(actual) == str(predicate.value)


def _project(record: Dict[str, Any], select: Optional[Sequence[str]]) -> Dict[str, Any]:
    if not select:
        return dict(record)
    keys = ["id", *select]
    return {k: record[k] for k in keys if k in record}


@dataclass
class MockEspoClient:
    """Small in-memory CRM with Account, Contact and CProduct."""

    config: Optional[EspoConfig] = None
    metadata: Dict[str, Any] = field(default_factory=lambda: copy.deepcopy(MOCK_METADATA))
    translations: Dict[str, Any] = field(
        default_factory=lambda: copy.deepcopy(MOCK_TRANSLATIONS)
    )
    records: Dict[str, Dict[str, Dict[str, Any]]] = field(default_factory=_seed_records)
    links: Dict[tuple, List[str]] = field(
        default_factory=lambda: {("Account", "acc-1", "contacts"): ["con-1"]}
    )

    def _table(self, entity_type: str) -> Dict[str, Dict[str, Any]]:
        if entity_type not in self.metadata.get("entityDefs", {}):
            raise EspoAPIError(f"Unknown mock entity type '{entity_type}'.", status_code=404)
        return self.records.setdefault(entity_type, {})

    def _record(self, entity_type: str, record_id: str) -> Dict[str, Any]:
        record = self._table(entity_type).get(record_id)
        if record is None:
            raise EspoAPIError(
                f"{entity_type} record '{record_id}' not found.", status_code=404
            )
        return record

    def _target(self, entity_type: str, link: str) -> str:
        links = self.metadata["entityDefs"][entity_type].get("links") or {}
        definition = links.get(link)
        if not definition or not definition.get("entity"):
            raise EspoAPIError(
                f"Unknown link '{link}' on {entity_type}.", status_code=404
            )
        return definition["entity"]

    # ------------------------------------------------------------------
    # Connection & schema
    # ------------------------------------------------------------------

    async def test_connection(self) -> Dict[str, Any]:
        return {
            "success": True,
            "user": {"id": "mock-user", "userName": "mock-admin"},
            "version": "mock",
        }

    async def fetch_metadata(self) -> Dict[str, Any]:
        return copy.deepcopy(self.metadata)

    async def fetch_translations(self) -> Dict[str, Any]:
        return copy.deepcopy(self.translations)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def create(self, entity_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        table = self._table(entity_type)
        record_id = uuid.uuid4().hex[:17]
        record = {**data, "id": record_id, "createdAt": _now()}
        table[record_id] = record
        return dict(record)

    async def get_by_id(
        self,
        entity_type: str,
        record_id: str,
        select: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        return _project(self._record(entity_type, record_id), select)

    async def update(
        self, entity_type: str, record_id: str, data: Dict[str, Any]
    ) -> Dict[str, Any]:
        record = self._record(entity_type, record_id)
        record.update(data)
        record["modifiedAt"] = _now()
        return dict(record)

    async def delete(self, entity_type: str, record_id: str) -> bool:
        self._record(entity_type, record_id)
        del self.records[entity_type][record_id]
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
        rows = [
            r for r in self._table(entity_type).values()
            if all(_matches(r, p) for p in (where or []))
        ]
        if order_by:
            rows.sort(key=lambda r: str(r.get(order_by) or ""), reverse=order == "desc")

        page = rows[offset: offset + max_size]
        return {"total": len(rows), "list": [_project(r, select) for r in page]}

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def link(
        self, entity_type: str, record_id: str, link: str, related_ids: Sequence[str]
    ) -> bool:
        target = self._target(entity_type, link)
        self._record(entity_type, record_id)
        for related_id in related_ids:
            self._record(target, related_id)

        linked = self.links.setdefault((entity_type, record_id, link), [])
        for related_id in related_ids:
            if related_id not in linked:
                linked.append(related_id)
        return True

    async def unlink(
        self, entity_type: str, record_id: str, link: str, related_ids: Sequence[str]
    ) -> bool:
        self._target(entity_type, link)
        self._record(entity_type, record_id)
        linked = self.links.get((entity_type, record_id, link), [])
        self.links[(entity_type, record_id, link)] = [
            i for i in linked if i not in set(related_ids)
        ]
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
        target = self._target(entity_type, link)
        self._record(entity_type, record_id)
        table = self.records.get(target, {})
        rows = [
            table[i] for i in self.links.get((entity_type, record_id, link), []) if i in table
        ]
        page = rows[offset: offset + max_size]
        return {"total": len(rows), "list": [_project(r, select) for r in page]}
