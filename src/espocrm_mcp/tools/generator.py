# EspoCRM MCP Server
# File: tools/generator.py
# Version: v1

"""Generate typed CRUD tool definitions from the schema catalog.

Each visible entity yields five operations, always in the order
create, search, get, update, delete.
"""

from __future__ import annotations

import logging
from typing import List

from ..catalog import SchemaCatalog
from ..models import OperationSchema, ParamSpec, ProcessedField

logger = logging.getLogger(__name__)

ACTIONS = ("create", "search", "get", "update", "delete")

# System fields never offered as tool parameters.
EXCLUDED_FIELDS = frozenset(
    {
        "id",
        "deleted",
        "createdAt",
        "modifiedAt",
        "createdBy",
        "createdById",
        "createdByName",
        "modifiedBy",
        "modifiedById",
        "modifiedByName",
    }
)

# Long text (text, wysiwyg) and multi-value kinds are left out.
SEARCHABLE_KINDS = frozenset(
    {
        "varchar",
        "email",
        "phone",
        "url",
        "int",
        "float",
        "currency",
        "date",
        "datetime",
        "enum",
        "bool",
        "link",
    }
)

SEARCH_LIMIT_DEFAULT = 20
SEARCH_LIMIT_MAX = 200

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"

_JSON_TYPES = {
    "int": "integer",
    "float": "number",
    "currency": "number",
    "bool": "boolean",
    "linkMultiple": "array",
    "urlMultiple": "array",
}


def field_to_param(field: ProcessedField, required: bool = False) -> ParamSpec:
    """Map an EspoCRM field onto a JSON schema parameter."""
    descriptor = field.descriptor
    kind = descriptor.kind
    json_type = _JSON_TYPES.get(kind, "string")
    description = field.description

    enum = None
    if kind == "enum" and descriptor.choices:
        enum = descriptor.choices

    minimum = maximum = None
    if kind in {"int", "float", "currency"}:
        minimum, maximum = descriptor.min, descriptor.max

    max_length = None
    if kind in {"varchar", "text"}:
        max_length = descriptor.max_length

    items_type = "string" if json_type == "array" else None

    pattern = None
    if kind == "date":
        pattern = DATE_PATTERN
        description = f"{description} (YYYY-MM-DD format)"
    elif kind == "datetime":
        description = f"{description} (ISO 8601 format)"

    return ParamSpec(
        name=descriptor.name,
        json_type=json_type,
        description=description,
        required=required,
        enum=enum,
        items_type=items_type,
        minimum=minimum,
        maximum=maximum,
        max_length=max_length,
        pattern=pattern,
    )


def _is_writable(field: ProcessedField) -> bool:
    return not field.descriptor.read_only and field.name not in EXCLUDED_FIELDS


def _id_param(description: str) -> ParamSpec:
    return ParamSpec(name="id", json_type="string", description=description, required=True)


def _select_param(description: str) -> ParamSpec:
    return ParamSpec(
        name="select", json_type="array", items_type="string", description=description
    )


SEARCH_CONTROL_PARAMS = (
    _select_param("Fields to include in results"),
    ParamSpec(
        name="limit",
        json_type="integer",
        description="Maximum number of results to return",
        default=SEARCH_LIMIT_DEFAULT,
        minimum=1,
        maximum=SEARCH_LIMIT_MAX,
    ),
    ParamSpec(
        name="offset",
        json_type="integer",
        description="Number of records to skip",
        default=0,
        minimum=0,
    ),
    ParamSpec(name="orderBy", json_type="string", description="Field to order results by"),
    ParamSpec(
        name="order",
        json_type="string",
        description="Sort order",
        enum=("asc", "desc"),
        default="asc",
    ),
)


class ToolSynthesizer:
    """Builds OperationSchemas for every visible entity in a catalog."""

    def __init__(self) -> None:
        self.warnings: List[str] = []

    def synthesize(self, catalog: SchemaCatalog) -> List[OperationSchema]:
        self.warnings = []
        operations: List[OperationSchema] = []
        entities = catalog.list_visible_entities()

        for entity in entities:
            try:
                operations.extend(self.entity_operations(catalog, entity))
            except Exception as exc:
                message = f"Failed to generate tools for {entity}: {exc}"
                self.warnings.append(message)
                logger.warning(message)

        logger.info(
            "Generated %d dynamic tools for %d entities", len(operations), len(entities)
        )
        return operations

    def entity_operations(self, catalog: SchemaCatalog, entity: str) -> List[OperationSchema]:
        fields = catalog.processed_fields(entity)
        writable = [f for f in fields if _is_writable(f)]

        return [
            self._create(catalog, entity, writable),
            self._search(entity, writable),
            self._get(entity),
            self._update(entity, writable),
            self._delete(entity),
        ]

    def _create(
        self, catalog: SchemaCatalog, entity: str, writable: List[ProcessedField]
    ) -> OperationSchema:
        params = tuple(field_to_param(f, required=f.descriptor.required) for f in writable)
        description = catalog.action_label(entity, "create") or f"Create {entity}"
        return OperationSchema(
            name=f"create_{entity}",
            description=description,
            parameters=params,
            action="create",
            entity=entity,
        )

    def _search(self, entity: str, writable: List[ProcessedField]) -> OperationSchema:
        filters = tuple(
            field_to_param(f) for f in writable if f.kind in SEARCHABLE_KINDS
        )
        return OperationSchema(
            name=f"search_{entity}",
            description=f"Search for {entity} records",
            parameters=filters + SEARCH_CONTROL_PARAMS,
            action="search",
            entity=entity,
        )

    def _get(self, entity: str) -> OperationSchema:
        return OperationSchema(
            name=f"get_{entity}",
            description=f"Get a specific {entity} by ID",
            parameters=(
                _id_param(f"The unique ID of the {entity}"),
                _select_param("Fields to include in the response"),
            ),
            action="get",
            entity=entity,
        )

    def _update(self, entity: str, writable: List[ProcessedField]) -> OperationSchema:
        params = (_id_param(f"The unique ID of the {entity} to update"),) + tuple(
            field_to_param(f) for f in writable
        )
        return OperationSchema(
            name=f"update_{entity}",
            description=f"Update an existing {entity}",
            parameters=params,
            action="update",
            entity=entity,
        )

    def _delete(self, entity: str) -> OperationSchema:
        return OperationSchema(
            name=f"delete_{entity}",
            description=f"Delete a {entity} by ID",
            parameters=(_id_param(f"The unique ID of the {entity} to delete"),),
            action="delete",
            entity=entity,
        )
