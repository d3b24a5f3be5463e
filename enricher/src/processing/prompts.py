"""Prompt templates and system-prompt assembly for document analysis.

Kept apart from the analyzer so prompts stay versionable and swappable.
Placeholders: %CUSTOMFIELDS%, %RESTRICTED_TAGS%, %RESTRICTED_CORRESPONDENTS%,
%RESTRICTED_DOCUMENT_TYPES% and %JSON_SCHEMA%.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from ..config import CustomFieldDefinition, Settings
from ..utils import dumps
from .entity_cache import CatalogSnapshot, RestrictionPolicy

DEFAULT_SYSTEM_PROMPT = """You are a meticulous archivist. You receive the text of a single document from a personal document archive and derive its metadata.

- title: short and descriptive, in the language of the document, without file extensions
- tags: up to 4 general topics, never the correspondent's name
- correspondent: the sender or issuing organisation, as short as possible (e.g. "Amazon" rather than "Amazon EU SARL")
- document_type: one generic type such as Invoice, Contract, Letter, Receipt
- document_date: the date the document was issued, formatted YYYY-MM-DD
- language: ISO 639-1 code of the document language
"""

MUST_HAVE_PROMPT = """Return the result EXCLUSIVELY as a JSON object. Tags, title and document type must be in the language of the document.

{
  "title": "xxxxx",
  "correspondent": "xxxxxxxx",
  "tags": ["Tag1", "Tag2", "Tag3", "Tag4"],
  "document_type": "Invoice/Contract/...",
  "document_date": "YYYY-MM-DD",
  "language": "en/de/es/...",
  %CUSTOMFIELDS%
}

Restrictions: tags must be chosen from %RESTRICTED_TAGS%; correspondent from %RESTRICTED_CORRESPONDENTS%; document_type from %RESTRICTED_DOCUMENT_TYPES%. Use null when nothing fits.
"""

PROMPT_TAGS_PROMPT = """Choose the tags for this document ONLY from the following list and ignore any other tag: %PROMPT_TAGS%
"""

EXISTING_DATA_PREFIX = """Prefer these existing values where they fit.
Existing tags: {tags}
Existing correspondents: {correspondents}
Existing document types: {document_types}

"""

EXTERNAL_DATA_PREFIX = "\n\nAdditional context from external API:\n"

UNRESTRICTED = "any value"


def custom_fields_block(definitions: Sequence[CustomFieldDefinition]) -> str:
    if not definitions:
        return '"custom_fields": {}'
    lines = ",\n    ".join(
        f'"{d.name}": "{d.description or d.data_type}"' for d in definitions
    )
    return f'"custom_fields": {{\n    {lines}\n  }}'


def restriction_list(restricted: bool, names: Sequence[str]) -> str:
    if not restricted or not names:
        return UNRESTRICTED
    return ", ".join(names)


def prompt_tags_fragment(settings: Settings) -> Optional[str]:
    if not (settings.use_prompt_tags and settings.prompt_tags):
        return None
    return PROMPT_TAGS_PROMPT.replace("%PROMPT_TAGS%", ", ".join(settings.prompt_tags))


def build_system_prompt(
    settings: Settings,
    snapshot: CatalogSnapshot,
    policy: RestrictionPolicy,
    schema: dict,
    override_prompt: Optional[str] = None,
    external_data: Optional[str] = None,
) -> str:
    """Assemble the system prompt.

    An override prompt replaces the configured base prompt. The JSON contract
    is injected at %JSON_SCHEMA% when present, else appended.
    """
    base = override_prompt or settings.system_prompt or DEFAULT_SYSTEM_PROMPT
    parts: List[str] = []
    if settings.use_existing_data and not override_prompt:
        parts.append(EXISTING_DATA_PREFIX.format(
            tags=", ".join(snapshot.tags) or "none",
            correspondents=", ".join(snapshot.correspondents) or "none",
            document_types=", ".join(snapshot.document_types) or "none",
        ))
    parts.append(base)

    if "%JSON_SCHEMA%" in base:
        prompt = "".join(parts).replace("%JSON_SCHEMA%", dumps(schema))
    else:
        prompt = "".join(parts) + "\n\n" + MUST_HAVE_PROMPT

    definitions = settings.active_custom_fields if settings.enable_custom_fields else []
    prompt = (
        prompt.replace("%CUSTOMFIELDS%", custom_fields_block(definitions))
        .replace("%RESTRICTED_TAGS%", restriction_list(policy.tags, snapshot.tags))
        .replace("%RESTRICTED_CORRESPONDENTS%", restriction_list(policy.correspondents, snapshot.correspondents))
        .replace("%RESTRICTED_DOCUMENT_TYPES%", restriction_list(policy.document_types, snapshot.document_types))
    )
    if external_data:
        prompt += EXTERNAL_DATA_PREFIX + external_data
    return prompt


__all__ = [
    "DEFAULT_SYSTEM_PROMPT",
    "MUST_HAVE_PROMPT",
    "build_system_prompt",
    "prompt_tags_fragment",
    "custom_fields_block",
]
