# EspoCRM MCP Server
# File: tools/router.py
# Version: v1

"""Route ``{action}_{Entity}`` tool calls to the EspoCRM client.

An operation name is parsed exactly once into an ``OperationRef``; the rest
of the module only looks at ``ref.action`` and the resolved entity name.
Every failure is returned as an error ``ToolResult``; nothing raised by a
handler escapes ``execute``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..catalog import SchemaCatalog
from ..models import (
    EntityNotFound,
    ExecutionError,
    FilterPredicate,
    MissingParameter,
    MissingRequiredFields,
    NoFieldsProvided,
    OperationError,
    OperationSchema,
    ParamSpec,
    ToolResult,
)
from .formatting import (
    DEFAULT_DISPLAY_NAME_POLICY,
    DisplayNamePolicy,
    display_name,
    format_entity_details,
    format_entity_results,
)
from .generator import SEARCH_CONTROL_PARAMS, SEARCH_LIMIT_DEFAULT, SEARCH_LIMIT_MAX

logger = logging.getLogger(__name__)

_OPERATION_NAME = re.compile(r"^(create|search|get|update|delete)_(.+)$")

SEARCH_CONTROL_NAMES = frozenset(p.name for p in SEARCH_CONTROL_PARAMS)

WILDCARD = "*"


@dataclass(frozen=True)
class OperationRef:
    """A parsed dynamic operation name: ``search_Contact`` -> (search, Contact)."""

    action: str
    entity: str

    @property
    def name(self) -> str:
        return f"{self.action}_{self.entity}"


def parse_operation_name(name: str) -> Optional[OperationRef]:
    match = _OPERATION_NAME.match(name or "")
    if not match:
        return None
    return OperationRef(action=match.group(1), entity=match.group(2))


def _clamp(value: Any, default: int, min_value: int, max_value: int | None = None) -> int:
    """Clamp an integer argument into range, using default when unusable."""
    try:
        v = int(value)
    except (TypeError, ValueError):
        v = default
    if v < min_value:
        v = min_value
    if max_value is not None and v > max_value:
        v = max_value
    return v


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, tuple)) and not value)


def build_where(
    filters: Mapping[str, Any],
    specs: Mapping[str, ParamSpec] | None = None,
) -> List[FilterPredicate]:
    """Turn filter arguments into EspoCRM where-clause predicates.

    ``"Acme*"`` becomes contains("Acme"), a list becomes ``in`` and any other
    value becomes ``equals``. Empty values are dropped.
    """
    specs = specs or {}
    where: List[FilterPredicate] = []

    for attribute, raw in filters.items():
        if _is_empty(raw):
            continue

        if isinstance(raw, str) and WILDCARD in raw:
            where.append(
                FilterPredicate("contains", attribute, raw.replace(WILDCARD, ""))
            )
            continue

        spec = specs.get(attribute)
        value = spec.coerce(raw) if spec is not None else raw
        if _is_empty(value):
            continue

        if isinstance(value, (list, tuple)):
            where.append(FilterPredicate("in", attribute, list(value)))
        else:
            where.append(FilterPredicate("equals", attribute, value))

    return where


class OperationRouter:
    """Validates and executes generated CRUD operations for one catalog."""

    def __init__(
        self,
        client: Any,
        catalog: SchemaCatalog,
        operations: Sequence[OperationSchema] = (),
        display_policy: DisplayNamePolicy = DEFAULT_DISPLAY_NAME_POLICY,
    ) -> None:
        self.client = client
        self.catalog = catalog
        self.display_policy = display_policy
        self._operations: Dict[str, OperationSchema] = {op.name: op for op in operations}

    # ------------------------------------------------------------------
    # Name handling
    # ------------------------------------------------------------------

    def resolve(self, ref: OperationRef) -> str:
        """Resolved entity type for ``ref``; raises EntityNotFound."""
        return self.catalog.resolve_entity_name(ref.entity)

    def claims(self, ref: Optional[OperationRef]) -> bool:
        if ref is None:
            return False
        try:
            self.resolve(ref)
        except EntityNotFound:
            return False
        return True

    def is_dynamic_operation(self, name: str) -> bool:
        return self.claims(parse_operation_name(name))

    def _specs(self, action: str, entity: str) -> Dict[str, ParamSpec]:
        schema = self._operations.get(f"{action}_{entity}")
        if schema is None:
            return {}
        return {p.name: p for p in schema.parameters}

    def _sanitize(self, data: Mapping[str, Any], specs: Mapping[str, ParamSpec]) -> Dict[str, Any]:
        clean: Dict[str, Any] = {}
        for key, value in data.items():
            if value is None:
                continue
            spec = specs.get(key)
            if spec is not None:
                value = spec.coerce(value)
            elif isinstance(value, str):
                value = value.strip()
            clean[key] = value
        return clean

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, name: str, arguments: Mapping[str, Any] | None = None) -> ToolResult:
        ref = parse_operation_name(name)
        if ref is None:
            return ToolResult.error(f"Invalid tool name: {name}")
        return await self.execute(ref, arguments)

    async def execute(
        self, ref: OperationRef, arguments: Mapping[str, Any] | None = None
    ) -> ToolResult:
        args = dict(arguments or {})
        try:
            entity = self.resolve(ref)
            logger.debug("Handling %s on %s", ref.action, entity)
            handler = getattr(self, f"_handle_{ref.action}")
            return await handler(ref, entity, args)
        except ExecutionError as exc:
            logger.error("Tool execution failed: %s", ref.name)
            return ToolResult.error(str(exc))
        except OperationError as exc:
            return ToolResult.error(str(exc), operation=ref.name)
        except Exception as exc:
            logger.error("Tool execution failed: %s: %s", ref.name, exc)
            return ToolResult.error(str(ExecutionError(ref.name, str(exc))))

    async def _call(self, ref: OperationRef, coro: Any) -> Any:
        """Await a client call, wrapping any failure as ExecutionError."""
        try:
            return await coro
        except Exception as exc:
            raise ExecutionError(ref.name, str(exc)) from exc

    @staticmethod
    def _require_id(args: Dict[str, Any]) -> str:
        record_id = args.pop("id", None)
        if record_id is None or not str(record_id).strip():
            raise MissingParameter("id")
        return str(record_id).strip()

    async def _handle_create(self, ref: OperationRef, entity: str, args: Dict[str, Any]) -> ToolResult:
        required = [
            name
            for name, field in self.catalog.fields(entity).items()
            if field.required and not field.read_only
        ]
        missing = [name for name in required if args.get(name) is None]
        if missing:
            raise MissingRequiredFields(missing)

        data = self._sanitize(args, self._specs("create", entity))
        record = await self._call(ref, self.client.create(entity, data))

        return ToolResult.ok(
            f"Successfully created {entity}: "
            f"{display_name(record, self.display_policy)} (ID: {record.get('id')})"
        )

    async def _handle_search(self, ref: OperationRef, entity: str, args: Dict[str, Any]) -> ToolResult:
        specs = self._specs("search", entity)

        select = specs["select"].coerce(args.get("select")) if "select" in specs else args.get("select")
        limit = _clamp(args.get("limit"), SEARCH_LIMIT_DEFAULT, 1, SEARCH_LIMIT_MAX)
        offset = _clamp(args.get("offset"), 0, 0)
        order_by = args.get("orderBy") or None
        order = str(args.get("order") or "asc").strip().lower()
        if order not in ("asc", "desc"):
            order = "asc"

        filters = {k: v for k, v in args.items() if k not in SEARCH_CONTROL_NAMES}
        where = build_where(filters, specs)

        result = await self._call(
            ref,
            self.client.search(
                entity,
                where=where or None,
                select=select or None,
                max_size=limit,
                offset=offset,
                order_by=order_by,
                order=order,
            ),
        )

        rows = result.get("list") or []
        if not rows:
            return ToolResult.ok(f"No {entity} records found matching the criteria.")

        total = result.get("total") or len(rows)
        listing = format_entity_results(rows, entity, self.display_policy)
        return ToolResult.ok(
            f"Found {total} {entity} record(s) (showing {len(rows)}):\n\n{listing}"
        )

    async def _handle_get(self, ref: OperationRef, entity: str, args: Dict[str, Any]) -> ToolResult:
        record_id = self._require_id(args)
        specs = self._specs("get", entity)
        select = specs["select"].coerce(args.get("select")) if "select" in specs else args.get("select")

        record = await self._call(ref, self.client.get_by_id(entity, record_id, select=select or None))
        return ToolResult.ok(format_entity_details(record, entity, self.display_policy))

    async def _handle_update(self, ref: OperationRef, entity: str, args: Dict[str, Any]) -> ToolResult:
        record_id = self._require_id(args)
        data = self._sanitize(args, self._specs("update", entity))
        if not data:
            raise NoFieldsProvided()

        record = await self._call(ref, self.client.update(entity, record_id, data))
        return ToolResult.ok(
            f"Successfully updated {entity}: "
            f"{display_name(record or {'id': record_id}, self.display_policy)} (ID: {record_id})"
        )

    async def _handle_delete(self, ref: OperationRef, entity: str, args: Dict[str, Any]) -> ToolResult:
        record_id = self._require_id(args)
        await self._call(ref, self.client.delete(entity, record_id))
        return ToolResult.ok(f"Successfully deleted {entity} with ID: {record_id}")
