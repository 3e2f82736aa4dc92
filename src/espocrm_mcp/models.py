# EspoCRM MCP Server
# File: models.py
# Version: v1

"""Domain models and error types used by the EspoCRM MCP server."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple


# ---------------------------------------------------------------------------
# Remote schema
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldDescriptor:
    """A single field of an EspoCRM entity, as declared in /Metadata."""

    name: str
    kind: str
    required: bool = False
    read_only: bool = False
    choices: Optional[Tuple[str, ...]] = None
    min: Optional[float] = None
    max: Optional[float] = None
    max_length: Optional[int] = None

    @classmethod
    def from_metadata(cls, name: str, raw: Mapping[str, Any]) -> "FieldDescriptor":
        options = raw.get("options")
        choices = None
        if isinstance(options, (list, tuple)):
            choices = tuple(str(o) for o in options)

        max_length = raw.get("maxLength")
        return cls(
            name=name,
            kind=str(raw.get("type") or "varchar"),
            required=bool(raw.get("required", False)),
            read_only=bool(raw.get("readOnly", False)),
            choices=choices,
            min=_as_number(raw.get("min")),
            max=_as_number(raw.get("max")),
            max_length=int(max_length) if isinstance(max_length, (int, float)) else None,
        )


@dataclass(frozen=True)
class RelationDescriptor:
    """A link between entity types (hasMany, belongsTo, ...)."""

    name: str
    kind: str
    target_entity: Optional[str] = None


@dataclass(frozen=True)
class EntityDescriptor:
    """Fields and relations of one remote entity type."""

    name: str
    fields: Mapping[str, FieldDescriptor]
    relations: Mapping[str, RelationDescriptor]


@dataclass(frozen=True)
class TranslationSet:
    """Display strings for one entity type; any map may be empty."""

    field_labels: Mapping[str, str] = field(default_factory=dict)
    tooltips: Mapping[str, str] = field(default_factory=dict)
    action_labels: Mapping[str, str] = field(default_factory=dict)
    relation_labels: Mapping[str, str] = field(default_factory=dict)
    choice_labels: Mapping[str, Mapping[str, str]] = field(default_factory=dict)

    @classmethod
    def from_i18n(cls, raw: Mapping[str, Any] | None) -> "TranslationSet":
        raw = raw or {}

        def _strings(key: str) -> Dict[str, str]:
            value = raw.get(key)
            if not isinstance(value, dict):
                return {}
            return {str(k): str(v) for k, v in value.items() if isinstance(v, str)}

        choice_labels: Dict[str, Dict[str, str]] = {}
        options = raw.get("options")
        if isinstance(options, dict):
            for field_name, labels in options.items():
                if isinstance(labels, dict):
                    choice_labels[str(field_name)] = {
                        str(k): str(v) for k, v in labels.items() if isinstance(v, str)
                    }

        return cls(
            field_labels=_strings("fields"),
            tooltips=_strings("tooltips"),
            action_labels=_strings("labels"),
            relation_labels=_strings("links"),
            choice_labels=choice_labels,
        )


@dataclass(frozen=True)
class ProcessedField:
    """A field descriptor merged with its resolved description."""

    descriptor: FieldDescriptor
    description: str

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def kind(self) -> str:
        return self.descriptor.kind


# ---------------------------------------------------------------------------
# Generated operations
# ---------------------------------------------------------------------------


_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class ParamSpec:
    """Typed description of one operation parameter.

    The same spec renders the JSON schema property advertised in tools/list
    and coerces the value received in tools/call.
    """

    name: str
    json_type: str
    description: str = ""
    required: bool = False
    enum: Optional[Tuple[str, ...]] = None
    items_type: Optional[str] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    max_length: Optional[int] = None
    pattern: Optional[str] = None
    default: Any = None

    def to_property(self) -> Dict[str, Any]:
        prop: Dict[str, Any] = {"type": self.json_type}
        if self.description:
            prop["description"] = self.description
        if self.enum is not None:
            prop["enum"] = list(self.enum)
        if self.items_type is not None:
            prop["items"] = {"type": self.items_type}
        if self.minimum is not None:
            prop["minimum"] = self.minimum
        if self.maximum is not None:
            prop["maximum"] = self.maximum
        if self.max_length is not None:
            prop["maxLength"] = self.max_length
        if self.pattern is not None:
            prop["pattern"] = self.pattern
        if self.default is not None:
            prop["default"] = self.default
        return prop

    def coerce(self, value: Any) -> Any:
        """Convert an incoming argument to this parameter's type.

        Scalars given as lists (search "in" filters) are coerced item by item.
        Raises InvalidArgument when the value cannot be converted.
        """
        if value is None:
            return None

        if self.json_type == "array":
            if isinstance(value, str):
                value = [v.strip() for v in value.split(",") if v.strip()]
            if not isinstance(value, (list, tuple)):
                raise InvalidArgument(self.name, "expected a list")
            return [str(v) for v in value if v is not None]

        if isinstance(value, (list, tuple)):
            return [self.coerce(v) for v in value]

        if self.json_type == "integer":
            coerced: Any = self._to_integer(value)
        elif self.json_type == "number":
            coerced = self._to_number(value)
        elif self.json_type == "boolean":
            coerced = self._to_boolean(value)
        else:
            coerced = self._to_string(value)

        self._check(coerced)
        return coerced

    def _to_integer(self, value: Any) -> int:
        if isinstance(value, bool):
            raise InvalidArgument(self.name, "expected an integer")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                pass
        raise InvalidArgument(self.name, "expected an integer")

    def _to_number(self, value: Any) -> float | int:
        if isinstance(value, bool):
            raise InvalidArgument(self.name, "expected a number")
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            try:
                return float(value.strip())
            except ValueError:
                pass
        raise InvalidArgument(self.name, "expected a number")

    def _to_boolean(self, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise InvalidArgument(self.name, "expected a boolean")

    def _to_string(self, value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (str, int, float)):
            return str(value).strip()
        raise InvalidArgument(self.name, "expected a string")

    def _check(self, value: Any) -> None:
        if self.enum is not None and value not in self.enum:
            allowed = ", ".join(repr(v) for v in self.enum)
            raise InvalidArgument(self.name, f"must be one of {allowed}")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if self.minimum is not None and value < self.minimum:
                raise InvalidArgument(self.name, f"must be >= {self.minimum}")
            if self.maximum is not None and value > self.maximum:
                raise InvalidArgument(self.name, f"must be <= {self.maximum}")
        if isinstance(value, str):
            if self.max_length is not None and len(value) > self.max_length:
                raise InvalidArgument(
                    self.name, f"must be at most {self.max_length} characters"
                )
            if self.pattern is not None and value and not re.match(self.pattern, value):
                raise InvalidArgument(self.name, f"does not match {self.pattern}")


@dataclass(frozen=True)
class OperationSchema:
    """One generated, immutable tool definition."""

    name: str
    description: str
    parameters: Tuple[ParamSpec, ...]
    action: Optional[str] = None
    entity: Optional[str] = None

    @property
    def required(self) -> List[str]:
        return [p.name for p in self.parameters if p.required]

    def param(self, name: str) -> Optional[ParamSpec]:
        for p in self.parameters:
            if p.name == name:
                return p
        return None

    def input_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {p.name: p.to_property() for p in self.parameters},
            "required": self.required,
        }


@dataclass(frozen=True)
class FilterPredicate:
    """One EspoCRM where-clause item."""

    type: str
    attribute: str
    value: Any


@dataclass
class ToolResult:
    """Text outcome of a tools/call, flagged when it represents a failure."""

    text: str
    is_error: bool = False

    @classmethod
    def ok(cls, text: str) -> "ToolResult":
        return cls(text=text)

    @classmethod
    def error(cls, message: str, operation: str | None = None) -> "ToolResult":
        if operation:
            return cls(text=f"Error in {operation}: {message}", is_error=True)
        return cls(text=f"Error: {message}", is_error=True)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class EspoError(Exception):
    """Base class for errors raised by this package."""


class EspoAPIError(RuntimeError):
    """Raised when an EspoCRM REST call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class FetchFailure(EspoError):
    """The catalog could not be built from /Metadata and /I18n."""


class SessionNotFound(EspoError):
    """Missing, unknown, expired or terminated session id."""

    def __init__(self, session_id: str | None):
        super().__init__("Session not found or expired")
        self.session_id = session_id


class OperationError(EspoError):
    """A tools/call failure reported back to the caller as a result."""


class EntityNotFound(OperationError):
    def __init__(self, name: str, fallback: str):
        super().__init__(f"Entity type not found: {name} (also tried {fallback})")
        self.name = name
        self.fallback = fallback


class ValidationError(OperationError):
    """Arguments failed validation before any CRM call was made."""


class MissingRequiredFields(ValidationError):
    def __init__(self, fields: List[str]):
        super().__init__(f"Missing required fields: {', '.join(fields)}")
        self.fields = list(fields)


class MissingParameter(ValidationError):
    def __init__(self, name: str):
        super().__init__(f"Missing required parameter: {name}")
        self.name = name


class NoFieldsProvided(ValidationError):
    def __init__(self) -> None:
        super().__init__("No fields to update provided")


class InvalidArgument(ValidationError):
    def __init__(self, name: str, reason: str):
        super().__init__(f"Invalid value for '{name}': {reason}")
        self.name = name
        self.reason = reason


class ExecutionError(OperationError):
    """The CRM call failed after validation passed."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"Failed to execute {operation}: {message}")
        self.operation = operation
