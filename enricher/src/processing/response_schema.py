"""Structured-output schema for document analysis, and validation of replies.

``build_response_schema`` produces the JSON schema handed to the LLM client.
Providers may ignore it, so ``parse_analysis`` re-applies the same rules to
whatever text comes back.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from loguru import logger
from pydantic import BaseModel

from ..config import CustomFieldDefinition, Settings
from ..models import DocumentAnalysis
from ..utils import extract_first_json
from .entity_cache import RestrictionPolicy


class Capabilities(BaseModel):
    """Which metadata fields the pipeline asks for and writes back."""

    title: bool = True
    tags: bool = True
    correspondent: bool = True
    document_type: bool = True
    document_date: bool = True
    language: bool = True
    content: bool = False
    custom_fields: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "Capabilities":
        return cls(
            title=settings.enable_title,
            tags=settings.enable_tags,
            correspondent=settings.enable_correspondent,
            document_type=settings.enable_document_type,
            document_date=settings.enable_document_date,
            language=settings.enable_language,
            content=settings.enable_content,
            custom_fields=settings.enable_custom_fields,
        )


def custom_field_schema(definition: CustomFieldDefinition) -> Dict[str, Any]:
    data_type = definition.data_type
    description = definition.description or f"Value for the custom field '{definition.name}'."
    if data_type == "boolean":
        schema: Dict[str, Any] = {"type": "boolean"}
    elif data_type == "date":
        schema = {"type": "string", "format": "date"}
    elif data_type in {"float", "number"}:
        schema = {"type": "number"}
    elif data_type == "integer":
        schema = {"type": "integer"}
    elif data_type == "monetary":
        schema = {"type": "number"}
        if definition.currency:
            description = f"{description} Currency: {definition.currency}."
    elif data_type == "url":
        schema = {"type": "string", "format": "uri"}
    elif data_type == "select" and definition.options:
        schema = {"type": "string", "enum": list(definition.options)}
    else:
        schema = {"type": "string"}
    schema["description"] = description
    return schema


def build_response_schema(
    policy: RestrictionPolicy,
    capabilities: Capabilities,
    tag_names: Sequence[str] = (),
    correspondent_names: Sequence[str] = (),
    document_type_names: Sequence[str] = (),
    custom_fields: Sequence[CustomFieldDefinition] = (),
) -> Dict[str, Any]:
    tags_items: Dict[str, Any] = {"type": "string"}
    if policy.tags and tag_names:
        tags_items["enum"] = list(tag_names)

    correspondent: Dict[str, Any] = {"type": ["string", "null"]}
    if policy.correspondents and correspondent_names:
        correspondent["enum"] = [*correspondent_names, None]

    document_type: Dict[str, Any] = {"type": ["string", "null"]}
    if policy.document_types and document_type_names:
        document_type["enum"] = [*document_type_names, None]

    field_definitions = [
        f for f in custom_fields if f.enabled and f.name and f.data_type != "documentlink"
    ]
    properties: Dict[str, Any] = {
        "title": {"type": "string"},
        "correspondent": correspondent,
        "tags": {"type": "array", "items": tags_items},
        "document_type": document_type,
        "document_date": {"type": "string", "format": "date"},
        "language": {"type": "string"},
        "content": {"type": "string"},
        "custom_fields": {
            "type": "object",
            "properties": {f.name: custom_field_schema(f) for f in field_definitions},
        },
    }

    required = [
        name
        for name in ("title", "tags", "document_type", "correspondent", "document_date", "language", "content")
        if getattr(capabilities, name)
    ]
    if capabilities.custom_fields and field_definitions:
        required.append("custom_fields")

    return {"type": "object", "properties": properties, "required": required}


class AnalysisParse(BaseModel):
    analysis: Optional[DocumentAnalysis] = None
    error: Optional[str] = None
    dropped: List[str] = []

    @property
    def ok(self) -> bool:
        return self.analysis is not None


def _looks_like_data(properties: Dict[str, Any]) -> bool:
    return not any(isinstance(v, dict) and "type" in v for v in properties.values())


def _optional_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _coerce_tags(value: Any) -> List[str]:
    # a bare string is one tag name, commas included
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [str(t).strip() for t in value if t is not None and str(t).strip()]


def _allowed(schema: Optional[Dict[str, Any]], *path: str) -> Optional[set]:
    node: Any = schema or {}
    for key in path:
        node = node.get(key) if isinstance(node, dict) else None
    if not isinstance(node, list):
        return None
    return {str(v).lower() for v in node if v is not None}


def parse_analysis(text: str, schema: Optional[Dict[str, Any]] = None) -> AnalysisParse:
    """Extract, normalize and validate the model reply.

    Tags become a list, correspondent and document type become string or
    null, and values outside an enum of ``schema`` are dropped.
    """
    data = extract_first_json(text or "")
    if not isinstance(data, dict):
        return AnalysisParse(error="response holds no JSON object")

    properties = data.get("properties")
    if isinstance(properties, dict) and _looks_like_data(properties):
        data = properties

    custom_fields = data.get("custom_fields")
    analysis = DocumentAnalysis(
        title=_optional_text(data.get("title")),
        tags=_coerce_tags(data.get("tags")),
        correspondent=_optional_text(data.get("correspondent")),
        document_type=_optional_text(data.get("document_type")),
        document_date=_optional_text(data.get("document_date")),
        language=_optional_text(data.get("language")),
        content=data.get("content") if isinstance(data.get("content"), str) else None,
        custom_fields=custom_fields if isinstance(custom_fields, dict) else {},
    )

    dropped: List[str] = []
    props = ("properties",)
    tag_enum = _allowed(schema, *props, "tags", "items", "enum")
    if tag_enum is not None:
        kept = [t for t in analysis.tags if t.lower() in tag_enum]
        dropped += [f"tag:{t}" for t in analysis.tags if t.lower() not in tag_enum]
        analysis.tags = kept
    for field in ("correspondent", "document_type"):
        allowed = _allowed(schema, *props, field, "enum")
        value = getattr(analysis, field)
        if allowed is not None and value is not None and value.lower() not in allowed:
            dropped.append(f"{field}:{value}")
            setattr(analysis, field, None)

    if dropped:
        logger.warning(f"[llm] values outside the allowed set dropped: {dropped}")
    missing = [f for f in (schema or {}).get("required", []) if f not in data]
    if missing:
        logger.debug(f"[llm] response lacks fields {missing}")
    return AnalysisParse(analysis=analysis, dropped=dropped)


__all__ = [
    "Capabilities",
    "build_response_schema",
    "custom_field_schema",
    "parse_analysis",
    "AnalysisParse",
]
