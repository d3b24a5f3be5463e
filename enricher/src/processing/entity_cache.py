"""Per-kind catalogue caches with TTL refresh and conflict-safe find-or-create.

Each ``EntityCache`` mirrors one Paperless catalogue (tags, correspondents,
document types, custom fields) as ``name.lower() -> CatalogEntity``. A table
that is empty or older than its TTL is reloaded wholesale before the next
lookup; the new table replaces the old one in a single assignment.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx
from loguru import logger
from pydantic import BaseModel, Field

from ..config import CustomFieldDefinition, Settings
from ..errors import EnricherError, EntityConflictError
from ..models import CatalogEntity, EntityKind
from ..utils import TextUtils

RESTRICTED_REASON = "not found, restricted"


class RestrictionPolicy(BaseModel):
    """Per-kind "only use existing entities" flags."""

    tags: bool = False
    correspondents: bool = False
    document_types: bool = False
    custom_fields: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "RestrictionPolicy":
        return cls(
            tags=settings.restrict_to_existing_tags,
            correspondents=settings.restrict_to_existing_correspondents,
            document_types=settings.restrict_to_existing_document_types,
            custom_fields=settings.restrict_to_existing_custom_fields,
        )

    def for_kind(self, kind: EntityKind) -> bool:
        return getattr(self, kind.value)


class Resolution(BaseModel):
    ids: List[int] = Field(default_factory=list)
    errors: List[Dict[str, str]] = Field(default_factory=list)


class CatalogSnapshot(BaseModel):
    tags: List[str] = Field(default_factory=list)
    correspondents: List[str] = Field(default_factory=list)
    document_types: List[str] = Field(default_factory=list)
    custom_fields: List[str] = Field(default_factory=list)


def creation_payload(
    kind: EntityKind, name: str, definition: Optional[CustomFieldDefinition] = None
) -> Dict[str, Any]:
    if kind is EntityKind.CORRESPONDENT:
        return {"name": name, "matching_algorithm": 0}
    if kind is EntityKind.DOCUMENT_TYPE:
        return {"name": name, "matching_algorithm": 1, "match": "", "is_insensitive": True}
    if kind is EntityKind.CUSTOM_FIELD:
        payload: Dict[str, Any] = {"name": name, "data_type": "string"}
        if definition is not None:
            data_type = {"number": "float", "text": "string"}.get(definition.data_type, definition.data_type)
            payload["data_type"] = data_type
            if definition.extra_data:
                payload["extra_data"] = definition.extra_data
        return payload
    return {"name": name}


class EntityCache:
    """Cache of one catalogue kind backed by the store connector."""

    def __init__(
        self,
        connector,
        kind: EntityKind,
        ttl_seconds: float,
        definitions: Optional[Dict[str, CustomFieldDefinition]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.connector = connector
        self.kind = kind
        self.ttl_seconds = ttl_seconds
        self.definitions = definitions or {}
        self.clock = clock
        self.entries: Dict[str, CatalogEntity] = {}
        self.last_refresh: Optional[float] = None

    def is_stale(self) -> bool:
        if not self.entries or self.last_refresh is None:
            return True
        return self.clock() - self.last_refresh > self.ttl_seconds

    def invalidate(self):
        self.last_refresh = None

    async def refresh(self):
        entities = await self.connector.list_entities(self.kind)
        self.entries = {TextUtils.normalize_name(e.name): e for e in entities}
        self.last_refresh = self.clock()
        logger.debug(f"[cache] {self.kind.value} reloaded ({len(self.entries)} entries)")

    async def ensure_fresh(self):
        if self.is_stale():
            await self.refresh()

    def names(self) -> List[str]:
        return sorted(e.name for e in self.entries.values())

    async def _lookup(self, name: str) -> Optional[CatalogEntity]:
        key = TextUtils.normalize_name(name)
        if entity := self.entries.get(key):
            return entity
        entity = await self.connector.find_entity_by_name(self.kind, name.strip())
        if entity is not None:
            self.entries[key] = entity
        return entity

    async def find(self, name: str) -> Optional[CatalogEntity]:
        await self.ensure_fresh()
        return await self._lookup(name)

    async def find_or_create(self, name: str, restrict: bool) -> Optional[CatalogEntity]:
        """Return the entity named ``name``; create it unless ``restrict``.

        A creation rejected as a conflict means another writer got there
        first: the cache is reloaded and the lookup retried once.
        """
        name = name.strip()
        entity = await self.find(name)
        if entity is not None or restrict:
            return entity

        key = TextUtils.normalize_name(name)
        payload = creation_payload(self.kind, name, self.definitions.get(key))
        try:
            entity = await self.connector.create_entity(self.kind, payload)
        except EntityConflictError:
            logger.warning(f"[cache] {self.kind.label} '{name}' exists already; reloading")
            await self.refresh()
            entity = await self._lookup(name)
            if entity is None:
                raise
            return entity
        self.entries[key] = entity
        return entity

    async def resolve_many(self, names: Iterable[str], restrict: bool) -> Resolution:
        """Resolve names to ids, collecting one error per unresolvable name."""
        resolution = Resolution()
        seen = set()
        for raw in names:
            key = TextUtils.normalize_name(raw)
            if not key or key in seen:
                continue
            seen.add(key)
            name = str(raw).strip()
            try:
                entity = await self.find_or_create(name, restrict)
            except (EnricherError, httpx.HTTPError) as exc:
                logger.error(f"[cache] {self.kind.label} '{name}' failed: {exc}")
                resolution.errors.append({"name": name, "reason": str(exc) or type(exc).__name__})
                continue
            if entity is None:
                resolution.errors.append({"name": name, "reason": RESTRICTED_REASON})
            elif entity.id not in resolution.ids:
                resolution.ids.append(entity.id)
        return resolution


class CatalogCaches:
    """The four per-kind caches sharing one connector."""

    def __init__(self, connector, settings: Settings, clock: Callable[[], float] = time.monotonic):
        self.policy = RestrictionPolicy.from_settings(settings)
        ttl = settings.cache_ttl_seconds
        definitions = {TextUtils.normalize_name(d.name): d for d in settings.active_custom_fields}
        self.caches: Dict[EntityKind, EntityCache] = {
            kind: EntityCache(
                connector,
                kind,
                ttl,
                definitions=definitions if kind is EntityKind.CUSTOM_FIELD else None,
                clock=clock,
            )
            for kind in EntityKind
        }

    def __getitem__(self, kind: EntityKind) -> EntityCache:
        return self.caches[kind]

    @property
    def tags(self) -> EntityCache:
        return self.caches[EntityKind.TAG]

    async def resolve(self, kind: EntityKind, names: Iterable[str], restrict: Optional[bool] = None) -> Resolution:
        restrict = self.policy.for_kind(kind) if restrict is None else restrict
        return await self.caches[kind].resolve_many(names, restrict)

    async def find_or_create(self, kind: EntityKind, name: str, restrict: Optional[bool] = None) -> Optional[CatalogEntity]:
        restrict = self.policy.for_kind(kind) if restrict is None else restrict
        return await self.caches[kind].find_or_create(name, restrict)

    async def snapshot(self) -> CatalogSnapshot:
        names = {}
        for kind, cache in self.caches.items():
            await cache.ensure_fresh()
            names[kind.value] = cache.names()
        return CatalogSnapshot(**names)


__all__ = [
    "RESTRICTED_REASON",
    "RestrictionPolicy",
    "Resolution",
    "CatalogSnapshot",
    "EntityCache",
    "CatalogCaches",
    "creation_payload",
]
