# EspoCRM MCP Server
# File: tools/utility.py
# Version: v1

"""Fixed, non-entity tools offered in every toolset.

- health_check
- link_entities / unlink_entities
- get_entity_relationships
- describe_entity
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping

from ..catalog import SchemaCatalog
from ..models import (
    ExecutionError,
    InvalidArgument,
    MissingParameter,
    OperationError,
    OperationSchema,
    ParamSpec,
    ToolResult,
)
from .formatting import DEFAULT_DISPLAY_NAME_POLICY, DisplayNamePolicy, format_entity_results

logger = logging.getLogger(__name__)

RELATED_LIMIT_DEFAULT = 50
RELATED_LIMIT_MAX = 200

_ENTITY_TYPE = ParamSpec(
    name="entityType",
    json_type="string",
    description="The main entity type (e.g., 'Account', 'Contact')",
    required=True,
)
_ENTITY_ID = ParamSpec(
    name="entityId",
    json_type="string",
    description="ID of the main entity",
    required=True,
)
_RELATIONSHIP = ParamSpec(
    name="relationshipName",
    json_type="string",
    description="Name of the relationship (e.g., 'contacts', 'opportunities')",
    required=True,
)


def _related_ids(verb: str) -> ParamSpec:
    return ParamSpec(
        name="relatedEntityIds",
        json_type="array",
        items_type="string",
        description=f"Array of related entity IDs to {verb}",
        required=True,
    )


UTILITY_OPERATIONS = (
    OperationSchema(
        name="health_check",
        description="Check EspoCRM connection and API status",
        parameters=(),
    ),
    OperationSchema(
        name="link_entities",
        description="Create relationships between any two entities",
        parameters=(_ENTITY_TYPE, _ENTITY_ID, _RELATIONSHIP, _related_ids("link")),
    ),
    OperationSchema(
        name="unlink_entities",
        description="Remove relationships between entities",
        parameters=(_ENTITY_TYPE, _ENTITY_ID, _RELATIONSHIP, _related_ids("unlink")),
    ),
    OperationSchema(
        name="get_entity_relationships",
        description="Get all related entities for a specific entity and relationship",
        parameters=(
            _ENTITY_TYPE,
            _ENTITY_ID,
            _RELATIONSHIP,
            ParamSpec(
                name="limit",
                json_type="integer",
                description="Maximum number of results to return",
                default=RELATED_LIMIT_DEFAULT,
                minimum=1,
                maximum=RELATED_LIMIT_MAX,
            ),
            ParamSpec(
                name="offset",
                json_type="integer",
                description="Number of records to skip",
                default=0,
                minimum=0,
            ),
            ParamSpec(
                name="select",
                json_type="array",
                items_type="string",
                description="Fields to include in results",
            ),
        ),
    ),
    OperationSchema(
        name="describe_entity",
        description="Describe the fields and relationships of an entity type",
        parameters=(_ENTITY_TYPE,),
    ),
)

UTILITY_NAMES = frozenset(op.name for op in UTILITY_OPERATIONS)


def _validate(schema: OperationSchema, arguments: Mapping[str, Any] | None) -> Dict[str, Any]:
    """Coerce arguments through the schema and apply defaults."""
    arguments = arguments or {}
    values: Dict[str, Any] = {}
    for spec in schema.parameters:
        raw = arguments.get(spec.name)
        value = spec.coerce(raw) if raw is not None else None
        if value is None or value == "" or value == []:
            if spec.required:
                raise MissingParameter(spec.name)
            value = spec.default
        values[spec.name] = value
    return values


class UtilityTools:
    """Executes the fixed utility operations against one client/catalog pair."""

    def __init__(
        self,
        client: Any,
        catalog: SchemaCatalog,
        display_policy: DisplayNamePolicy = DEFAULT_DISPLAY_NAME_POLICY,
    ) -> None:
        self.client = client
        self.catalog = catalog
        self.display_policy = display_policy
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[ToolResult]]] = {
            "health_check": self._health_check,
            "link_entities": self._link_entities,
            "unlink_entities": self._unlink_entities,
            "get_entity_relationships": self._get_relationships,
            "describe_entity": self._describe_entity,
        }
        self._schemas = {op.name: op for op in UTILITY_OPERATIONS}

    def handles(self, name: str) -> bool:
        return name in self._handlers

    async def call(self, name: str, arguments: Mapping[str, Any] | None = None) -> ToolResult:
        try:
            values = _validate(self._schemas[name], arguments)
            return await self._handlers[name](values)
        except ExecutionError as exc:
            logger.error("Tool execution failed: %s", name)
            return ToolResult.error(str(exc))
        except OperationError as exc:
            return ToolResult.error(str(exc), operation=name)
        except Exception as exc:
            logger.error("Tool execution failed: %s: %s", name, exc)
            return ToolResult.error(str(ExecutionError(name, str(exc))))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_relation(self, values: Dict[str, Any]) -> tuple[str, str]:
        entity = self.catalog.resolve_entity_name(values["entityType"])
        relation = values["relationshipName"]
        if relation not in self.catalog.relations(entity):
            raise InvalidArgument(
                "relationshipName", f"{entity} has no relationship '{relation}'"
            )
        return entity, relation

    @staticmethod
    async def _call(operation: str, coro: Any) -> Any:
        try:
            return await coro
        except Exception as exc:
            raise ExecutionError(operation, str(exc)) from exc

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _health_check(self, values: Dict[str, Any]) -> ToolResult:
        info = await self._call("health_check", self.client.test_connection())
        if not info.get("success"):
            raise ExecutionError("health_check", "Connection test failed")

        user = info.get("user") or {}
        now = datetime.now(timezone.utc).isoformat()
        return ToolResult.ok(
            "EspoCRM connection healthy\n"
            "API authentication working\n"
            f"Server version: {info.get('version') or 'Unknown'}\n"
            f"User: {user.get('userName') or 'Unknown'}\n"
            f"Current time: {now}"
        )

    async def _link_entities(self, values: Dict[str, Any]) -> ToolResult:
        entity, relation = self._resolve_relation(values)
        ids = values["relatedEntityIds"]
        await self._call(
            "link_entities",
            self.client.link(entity, values["entityId"], relation, ids),
        )
        return ToolResult.ok(
            f"Successfully linked {len(ids)} entities to {entity} {values['entityId']} "
            f"via relationship '{relation}'"
        )

    async def _unlink_entities(self, values: Dict[str, Any]) -> ToolResult:
        entity, relation = self._resolve_relation(values)
        ids = values["relatedEntityIds"]
        await self._call(
            "unlink_entities",
            self.client.unlink(entity, values["entityId"], relation, ids),
        )
        return ToolResult.ok(
            f"Successfully unlinked {len(ids)} entities from {entity} {values['entityId']} "
            f"via relationship '{relation}'"
        )

    async def _get_relationships(self, values: Dict[str, Any]) -> ToolResult:
        entity, relation = self._resolve_relation(values)
        related = await self._call(
            "get_entity_relationships",
            self.client.get_related(
                entity,
                values["entityId"],
                relation,
                max_size=values["limit"],
                offset=values["offset"],
                select=values["select"] or None,
            ),
        )

        rows = related.get("list") or []
        if not rows:
            return ToolResult.ok(
                f"No related entities found for {entity} {values['entityId']} "
                f"via relationship '{relation}'"
            )

        total = related.get("total") or len(rows)
        listing = format_entity_results(rows, relation, self.display_policy)
        return ToolResult.ok(
            f"Found {total} related record(s) via '{relation}' (showing {len(rows)}):\n\n{listing}"
        )

    async def _describe_entity(self, values: Dict[str, Any]) -> ToolResult:
        entity = self.catalog.resolve_entity_name(values["entityType"])
        lines: List[str] = [f"Entity: {entity}", "", "Fields:"]

        for field in self.catalog.processed_fields(entity):
            descriptor = field.descriptor
            flags = [descriptor.kind]
            if descriptor.required:
                flags.append("required")
            if descriptor.read_only:
                flags.append("read-only")
            line = f"- {field.name} ({', '.join(flags)}): {field.description}"

            if descriptor.choices:
                labels = self.catalog.choice_labels(entity, field.name)
                choices = [
                    f"{c} ({labels[c]})" if labels.get(c) and labels[c] != c else c
                    for c in descriptor.choices
                    if c
                ]
                if choices:
                    line += f" [options: {', '.join(choices)}]"
            lines.append(line)

        relations = self.catalog.relations(entity)
        if relations:
            lines.extend(["", "Relationships:"])
            for name, relation in relations.items():
                target = f" -> {relation.target_entity}" if relation.target_entity else ""
                label = self.catalog.relation_label(entity, name)
                lines.append(f"- {name} ({relation.kind}{target}): {label}")

        return ToolResult.ok("\n".join(lines))
