# EspoCRM MCP Server
# File: catalog.py
# Version: v1

"""Schema catalog: EspoCRM metadata and translations for one API user.

The catalog is filled by a single ``refresh()`` which fetches ``/Metadata``
and ``/I18n`` in parallel. The parsed result is kept as one immutable
snapshot that is swapped in whole, so readers never see a half-updated
catalog and a failed refresh leaves the previous snapshot in place.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol

from .models import (
    EntityDescriptor,
    EntityNotFound,
    FetchFailure,
    FieldDescriptor,
    ProcessedField,
    RelationDescriptor,
    TranslationSet,
)

logger = logging.getLogger(__name__)

# EspoCRM prefixes entity types created in the Entity Manager with "C".
CUSTOM_ENTITY_PREFIX = "C"

_CAMEL_BOUNDARY = re.compile(r"(?<=\S)(?=[A-Z])")


class SchemaSource(Protocol):
    async def fetch_metadata(self) -> Dict[str, Any]: ...

    async def fetch_translations(self) -> Dict[str, Any]: ...


def camel_case_to_words(name: str) -> str:
    """Expand ``emailAddress`` into ``Email Address``.

    A space goes before every uppercase letter that does not already follow
    whitespace, so applying the function twice changes nothing.
    """
    words = _CAMEL_BOUNDARY.sub(" ", name).strip()
    return words[:1].upper() + words[1:]


def _capitalize_first(text: str) -> str:
    return text[:1].upper() + text[1:]


@dataclass(frozen=True)
class _Snapshot:
    entities: Mapping[str, EntityDescriptor] = field(default_factory=dict)
    scopes: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    translations: Mapping[str, TranslationSet] = field(default_factory=dict)


def _parse_entities(entity_defs: Mapping[str, Any]) -> Dict[str, EntityDescriptor]:
    entities: Dict[str, EntityDescriptor] = {}
    for entity_name, raw in entity_defs.items():
        if not isinstance(raw, dict):
            continue

        fields: Dict[str, FieldDescriptor] = {}
        raw_fields = raw.get("fields")
        if isinstance(raw_fields, dict):
            for field_name, field_def in raw_fields.items():
                if isinstance(field_def, dict):
                    fields[field_name] = FieldDescriptor.from_metadata(field_name, field_def)

        relations: Dict[str, RelationDescriptor] = {}
        raw_links = raw.get("links")
        if isinstance(raw_links, dict):
            for link_name, link_def in raw_links.items():
                if not isinstance(link_def, dict):
                    continue
                relations[link_name] = RelationDescriptor(
                    name=link_name,
                    kind=str(link_def.get("type") or ""),
                    target_entity=link_def.get("entity"),
                )

        entities[entity_name] = EntityDescriptor(
            name=entity_name, fields=fields, relations=relations
        )
    return entities


class SchemaCatalog:
    """Cached entity schema and translations for one EspoCRM user."""

    def __init__(self, source: SchemaSource) -> None:
        self._source = source
        self._snapshot = _Snapshot()
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    async def refresh(self) -> None:
        """Fetch metadata and translations; raise FetchFailure on error."""
        logger.info("Fetching EspoCRM metadata and translations...")
        try:
            metadata, i18n = await asyncio.gather(
                self._source.fetch_metadata(),
                self._source.fetch_translations(),
            )
        except Exception as exc:
            logger.error("Failed to fetch metadata: %s", exc)
            raise FetchFailure(f"Failed to initialize metadata: {exc}") from exc

        entity_defs = metadata.get("entityDefs") if isinstance(metadata, dict) else None
        if not isinstance(entity_defs, dict):
            raise FetchFailure("Failed to initialize metadata: response has no entityDefs")

        scopes = metadata.get("scopes")
        scopes = {k: v for k, v in scopes.items() if isinstance(v, dict)} if isinstance(scopes, dict) else {}

        translations = {}
        if isinstance(i18n, dict):
            translations = {
                name: TranslationSet.from_i18n(raw)
                for name, raw in i18n.items()
                if isinstance(raw, dict)
            }

        self._snapshot = _Snapshot(
            entities=_parse_entities(entity_defs),
            scopes=scopes,
            translations=translations,
        )
        self._ready = True
        logger.info(
            "Metadata initialized: %d entities available",
            len(self.list_visible_entities()),
        )

    def ensure_ready(self) -> None:
        if not self._ready:
            raise FetchFailure("Catalog has not been refreshed successfully")

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def list_visible_entities(self) -> List[str]:
        """Entity names in metadata order, minus disabled and non-entity scopes."""
        visible: List[str] = []
        for name in self._snapshot.entities:
            scope = self._snapshot.scopes.get(name)
            if scope is None:
                visible.append(name)
                continue
            if scope.get("disabled") is True:
                continue
            if scope.get("entity") is False:
                continue
            visible.append(name)
        return visible

    def has_entity(self, name: str) -> bool:
        return name in self._snapshot.entities

    def resolve_entity_name(self, name: str) -> str:
        """Return ``name`` or ``"C" + name``, whichever is known."""
        if self.has_entity(name):
            return name
        prefixed = CUSTOM_ENTITY_PREFIX + name
        if self.has_entity(prefixed):
            return prefixed
        raise EntityNotFound(name, prefixed)

    def entity(self, name: str) -> Optional[EntityDescriptor]:
        return self._snapshot.entities.get(name)

    def fields(self, name: str) -> Mapping[str, FieldDescriptor]:
        descriptor = self.entity(name)
        return descriptor.fields if descriptor else {}

    def relations(self, name: str) -> Mapping[str, RelationDescriptor]:
        descriptor = self.entity(name)
        return descriptor.relations if descriptor else {}

    def translations(self, name: str) -> TranslationSet:
        return self._snapshot.translations.get(name) or TranslationSet()

    # ------------------------------------------------------------------
    # Display strings
    # ------------------------------------------------------------------

    def describe_field(self, entity: str, field_name: str) -> str:
        """Tooltip, else field label, else the expanded field name."""
        translations = self.translations(entity)
        tooltip = translations.tooltips.get(field_name)
        if tooltip:
            return tooltip
        label = translations.field_labels.get(field_name)
        if label:
            return label
        return camel_case_to_words(field_name)

    def action_label(self, entity: str, action: str) -> Optional[str]:
        """Translated label such as "Create Contact", if the CRM has one."""
        key = f"{_capitalize_first(action)} {entity}"
        return self.translations(entity).action_labels.get(key) or None

    def relation_label(self, entity: str, relation: str) -> str:
        label = self.translations(entity).relation_labels.get(relation)
        return label or camel_case_to_words(relation)

    def choice_labels(self, entity: str, field_name: str) -> Mapping[str, str]:
        return self.translations(entity).choice_labels.get(field_name, {})

    def processed_fields(self, entity: str) -> List[ProcessedField]:
        return [
            ProcessedField(descriptor=descriptor, description=self.describe_field(entity, name))
            for name, descriptor in self.fields(entity).items()
        ]
