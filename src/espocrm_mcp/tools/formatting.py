# EspoCRM MCP Server
# File: tools/formatting.py
# Version: v1

"""Plain-text rendering of EspoCRM records for tool results."""

from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Sequence, Tuple

from ..config import DEFAULT_DISPLAY_NAME_FIELDS

DisplayNamePolicy = Tuple[Tuple[str, ...], ...]

# Keys that are noise in a listing (ids of link fields are kept).
_HIDDEN_KEYS = {"deleted", "isFollowed", "followersIds", "followersNames"}

_MAX_VALUE_CHARS = 200


def parse_display_name_policy(text: str | None) -> DisplayNamePolicy:
    """Parse ``"name,firstName+lastName,title"`` into ordered field groups.

    Groups are tried in order; fields inside a group are joined with spaces.
    """
    groups: List[Tuple[str, ...]] = []
    for chunk in (text or DEFAULT_DISPLAY_NAME_FIELDS).split(","):
        fields = tuple(f.strip() for f in chunk.split("+") if f.strip())
        if fields:
            groups.append(fields)
    return tuple(groups)


DEFAULT_DISPLAY_NAME_POLICY = parse_display_name_policy(DEFAULT_DISPLAY_NAME_FIELDS)


def display_name(
    record: Mapping[str, Any],
    policy: DisplayNamePolicy = DEFAULT_DISPLAY_NAME_POLICY,
) -> str:
    """Best-effort human name for a record, falling back to its id."""
    for group in policy:
        parts = [str(record[f]).strip() for f in group if record.get(f)]
        text = " ".join(p for p in parts if p)
        if text:
            return text

    record_id = record.get("id")
    return str(record_id) if record_id else "Unknown"


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (list, tuple)):
        return ", ".join(_format_value(v) for v in value)
    if isinstance(value, dict):
        return ", ".join(f"{k}: {_format_value(v)}" for k, v in value.items())
    text = str(value)
    if len(text) > _MAX_VALUE_CHARS:
        text = text[: _MAX_VALUE_CHARS - 3] + "..."
    return text


def _visible_items(record: Mapping[str, Any]) -> Iterable[Tuple[str, Any]]:
    for key, value in record.items():
        if key in _HIDDEN_KEYS:
            continue
        if value is None or value == "" or value == [] or value == {}:
            continue
        yield key, value


def format_entity_results(
    records: Sequence[Mapping[str, Any]],
    entity_type: str,
    policy: DisplayNamePolicy = DEFAULT_DISPLAY_NAME_POLICY,
) -> str:
    """Numbered listing: one line per record plus its populated fields."""
    blocks: List[str] = []
    for index, record in enumerate(records, start=1):
        header = f"{index}. {display_name(record, policy)}"
        record_id = record.get("id")
        if record_id:
            header += f" (ID: {record_id})"

        lines = [header]
        for key, value in _visible_items(record):
            if key in {"id", "name"}:
                continue
            lines.append(f"   {key}: {_format_value(value)}")
        blocks.append("\n".join(lines))

    if not blocks:
        return f"No {entity_type} records."
    return "\n\n".join(blocks)


def format_entity_details(
    record: Mapping[str, Any],
    entity_type: str,
    policy: DisplayNamePolicy = DEFAULT_DISPLAY_NAME_POLICY,
) -> str:
    """Full field dump of a single record."""
    lines = [f"{entity_type}: {display_name(record, policy)}"]
    for key, value in _visible_items(record):
        lines.append(f"{key}: {_format_value(value)}")
    return "\n".join(lines)
