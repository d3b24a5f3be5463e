from typing import Any, Dict, List, Optional

import httpx
from loguru import logger
from pydantic import BaseModel, Field

from ..errors import EnricherError
from ..models import Document, DocumentAnalysis, EntityKind
from .entity_cache import RESTRICTED_REASON, CatalogCaches
from .response_schema import Capabilities


class UpdatePlan(BaseModel):
    """Partial document update plus the names that could not be resolved."""

    payload: Dict[str, Any] = Field(default_factory=dict)
    errors: List[Dict[str, str]] = Field(default_factory=list)


async def _resolve_single(
    caches: CatalogCaches, kind: EntityKind, name: str, errors: List[Dict[str, str]]
) -> Optional[int]:
    try:
        entity = await caches.find_or_create(kind, name)
    except (EnricherError, httpx.HTTPError) as exc:
        errors.append({"kind": kind.label, "name": name, "reason": str(exc)})
        return None
    if entity is None:
        errors.append({"kind": kind.label, "name": name, "reason": RESTRICTED_REASON})
        return None
    return entity.id


async def build_update(
    analysis: DocumentAnalysis,
    document: Document,
    caches: CatalogCaches,
    capabilities: Capabilities,
) -> UpdatePlan:
    """Assemble the partial update for the enabled capabilities.

    Fields that are disabled or could not be resolved are left out of the
    payload; nothing is ever set to null.
    """
    plan = UpdatePlan()
    payload = plan.payload

    if capabilities.tags and analysis.tags:
        resolution = await caches.resolve(EntityKind.TAG, analysis.tags)
        plan.errors += [{"kind": "tag", **e} for e in resolution.errors]
        if resolution.ids:
            payload["tags"] = resolution.ids

    if capabilities.title and analysis.title:
        payload["title"] = analysis.title

    if capabilities.correspondent and analysis.correspondent:
        if (cid := await _resolve_single(caches, EntityKind.CORRESPONDENT, analysis.correspondent, plan.errors)) is not None:
            payload["correspondent"] = cid

    if capabilities.document_type and analysis.document_type:
        if (tid := await _resolve_single(caches, EntityKind.DOCUMENT_TYPE, analysis.document_type, plan.errors)) is not None:
            payload["document_type"] = tid

    if capabilities.document_date and analysis.document_date:
        payload["created"] = analysis.document_date

    if capabilities.language and analysis.language:
        payload["language"] = analysis.language

    if capabilities.content and analysis.content and analysis.content.strip():
        payload["content"] = analysis.content

    if capabilities.custom_fields and analysis.custom_fields:
        updated: Dict[int, Any] = {}
        for name, value in analysis.custom_fields.items():
            # null means "not found"; empty strings are written as given
            if value is None:
                continue
            field_id = await _resolve_single(caches, EntityKind.CUSTOM_FIELD, name, plan.errors)
            if field_id is not None:
                updated[field_id] = value
        if updated:
            kept = [
                {"field": cf.get("field"), "value": cf.get("value")}
                for cf in document.custom_fields
                if cf.get("field") not in updated
            ]
            payload["custom_fields"] = [{"field": f, "value": v} for f, v in updated.items()] + kept

    if plan.errors:
        logger.info(f"[doc] {document.id}: unresolved entities omitted: {plan.errors}")
    return plan


__all__ = ["UpdatePlan", "build_update"]
