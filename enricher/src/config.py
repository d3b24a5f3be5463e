"""Configuration for the enricher.

Settings are assembled once at startup by ``load_settings`` from four sources,
later ones winning: the ``DEFAULTS`` table, an optional JSON file
(``CONFIG_FILE``), the environment, and explicit overrides. The resulting
``Settings`` object is frozen and handed to every component.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .utils.json_utils import safe_loads


DEFAULTS: Dict[str, Any] = {
    # Paperless
    "PAPERLESS_URL": "http://paperless:8000",
    "PAPERLESS_TOKEN": None,
    "PAPERLESS_TOKEN_FILE": None,
    "PAPERLESS_TIMEOUT": 30.0,
    # LLM provider
    "AI_PROVIDER": "ollama",
    "OPENAI_API_KEY": None,
    "OPENAI_MODEL": "gpt-4o-mini",
    "OLLAMA_URL": "http://ollama:11434",
    "OLLAMA_MODEL": "llama3.2",
    "CUSTOM_BASE_URL": None,
    "CUSTOM_API_KEY": None,
    "CUSTOM_MODEL": None,
    "AZURE_ENDPOINT": None,
    "AZURE_API_KEY": None,
    "AZURE_DEPLOYMENT_NAME": None,
    "AZURE_API_VERSION": "2024-10-21",
    "LLM_TIMEOUT": 180.0,
    # Token budget
    "AI_TOKEN_LIMIT": 128000,
    "AI_RESPONSE_TOKENS": 1000,
    "AI_CONTENT_SOURCE_MODE": "content",
    "AI_RAW_DOCUMENT_MODE": "text",
    "CONTENT_MAX_CHARS": 50000,
    "MIN_CONTENT_LENGTH": 10,
    # Capabilities
    "ENABLE_TAGS": True,
    "ENABLE_CORRESPONDENT": True,
    "ENABLE_DOCUMENT_TYPE": True,
    "ENABLE_TITLE": True,
    "ENABLE_DOCUMENT_DATE": True,
    "ENABLE_LANGUAGE": True,
    "ENABLE_CONTENT": False,
    "ENABLE_CUSTOM_FIELDS": True,
    # Restrictions
    "RESTRICT_TO_EXISTING_TAGS": False,
    "RESTRICT_TO_EXISTING_CORRESPONDENTS": False,
    "RESTRICT_TO_EXISTING_DOCUMENT_TYPES": False,
    "RESTRICT_TO_EXISTING_CUSTOM_FIELDS": True,
    # Post-processing
    "ADD_AI_PROCESSED_TAG": False,
    "AI_PROCESSED_TAG_NAME": "ai-processed",
    "ADD_TAGS": False,
    "TAGS_TO_ADD": [],
    "REMOVE_TAGS": False,
    "TAGS_TO_REMOVE": [],
    # Prompting
    "SYSTEM_PROMPT": None,
    "USE_PROMPT_TAGS": False,
    "PROMPT_TAGS": [],
    "USE_EXISTING_DATA": False,
    "AI_CUSTOM_FIELDS": [],
    # Scan
    "PROCESS_PREDEFINED_DOCUMENTS": False,
    "PREDEFINED_TAGS": [],
    "SCHEDULE_TIME": 30,
    "DISABLE_AUTOMATIC_PROCESSING": False,
    "CACHE_TTL_SECONDS": 3.0,
    # External data
    "EXTERNAL_API_ENABLED": False,
    "EXTERNAL_API_URL": None,
    "EXTERNAL_API_METHOD": "GET",
    "EXTERNAL_API_HEADERS": {},
    "EXTERNAL_API_BODY": None,
    "EXTERNAL_API_TIMEOUT": 5.0,
    "EXTERNAL_API_DATA_PATH": None,
    # Files
    "STATE_PATH": "/data/state.json",
    "LOG_FILE": "/data/enricher.log",
    "PROMPT_LOG_FILE": "/data/prompts.log",
    "THUMBNAIL_DIR": None,
}


class CustomFieldDefinition(BaseModel):
    """A custom field the model is asked to fill."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str
    data_type: str = "string"
    description: str = ""
    enabled: bool = True
    currency: Optional[str] = None
    options: List[str] = Field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "CustomFieldDefinition":
        extra = raw.get("extra_data") or {}
        options = [
            str(o.get("label") if isinstance(o, Mapping) else o)
            for o in (raw.get("options") or extra.get("select_options") or [])
        ]
        return cls(
            name=str(raw.get("name") or raw.get("value") or "").strip(),
            data_type=str(raw.get("data_type") or raw.get("type") or "string").lower(),
            description=str(raw.get("description") or ""),
            enabled=raw.get("enabled", True) not in (False, "false", "no", "0"),
            currency=raw.get("currency") or extra.get("default_currency"),
            options=options,
        )

    @property
    def extra_data(self) -> Dict[str, Any]:
        if self.data_type == "monetary" and self.currency:
            return {"default_currency": self.currency}
        if self.data_type == "select" and self.options:
            return {"select_options": [{"label": o} for o in self.options]}
        return {}


def _split_list(value: Any) -> Any:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


def _decode_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        if not str(value).strip():
            return None
        return safe_loads(value)
    return value


class Settings(BaseModel):
    """Typed, immutable runtime configuration."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    paperless_url: str
    paperless_token: Optional[str] = None
    paperless_token_file: Optional[str] = None
    paperless_timeout: float

    ai_provider: Literal["ollama", "openai", "custom", "azure"]
    openai_api_key: Optional[str] = None
    openai_model: str
    ollama_url: str
    ollama_model: str
    custom_base_url: Optional[str] = None
    custom_api_key: Optional[str] = None
    custom_model: Optional[str] = None
    azure_endpoint: Optional[str] = None
    azure_api_key: Optional[str] = None
    azure_deployment_name: Optional[str] = None
    azure_api_version: str
    llm_timeout: float

    ai_token_limit: int = Field(gt=0)
    ai_response_tokens: int = Field(ge=0)
    ai_content_source_mode: Literal["content", "raw_document", "both"]
    ai_raw_document_mode: Literal["text", "file", "image"]
    content_max_chars: int = Field(gt=0)
    min_content_length: int = Field(ge=0)

    enable_tags: bool
    enable_correspondent: bool
    enable_document_type: bool
    enable_title: bool
    enable_document_date: bool
    enable_language: bool
    enable_content: bool
    enable_custom_fields: bool

    restrict_to_existing_tags: bool
    restrict_to_existing_correspondents: bool
    restrict_to_existing_document_types: bool
    restrict_to_existing_custom_fields: bool

    add_ai_processed_tag: bool
    ai_processed_tag_name: str
    add_tags: bool
    tags_to_add: List[str]
    remove_tags: bool
    tags_to_remove: List[str]

    system_prompt: Optional[str] = None
    use_prompt_tags: bool
    prompt_tags: List[str]
    use_existing_data: bool
    ai_custom_fields: List[CustomFieldDefinition]

    process_predefined_documents: bool
    predefined_tags: List[str]
    schedule_time: int = Field(gt=0)
    disable_automatic_processing: bool
    cache_ttl_seconds: float = Field(ge=0)

    external_api_enabled: bool
    external_api_url: Optional[str] = None
    external_api_method: str
    external_api_headers: Dict[str, str]
    external_api_body: Optional[Any] = None
    external_api_timeout: float
    external_api_data_path: Optional[str] = None

    state_path: Path
    log_file: str
    prompt_log_file: str
    thumbnail_dir: Optional[Path] = None

    @field_validator("tags_to_add", "tags_to_remove", "prompt_tags", "predefined_tags", mode="before")
    @classmethod
    def _lists(cls, value: Any) -> Any:
        return _split_list(value) if value is not None else []

    @field_validator("ai_content_source_mode", mode="before")
    @classmethod
    def _content_mode(cls, value: Any) -> Any:
        value = str(value).strip().lower()
        return "raw_document" if value in {"raw", "raw-document"} else value

    @field_validator("ai_provider", "ai_raw_document_mode", mode="before")
    @classmethod
    def _lowered(cls, value: Any) -> Any:
        return str(value).strip().lower()

    @field_validator("external_api_headers", mode="before")
    @classmethod
    def _headers(cls, value: Any) -> Any:
        return _decode_json(value) or {}

    @field_validator("external_api_body", mode="before")
    @classmethod
    def _body(cls, value: Any) -> Any:
        return _decode_json(value)

    @field_validator("ai_custom_fields", mode="before")
    @classmethod
    def _custom_fields(cls, value: Any) -> Any:
        value = _decode_json(value) or []
        if isinstance(value, Mapping):
            value = value.get("custom_fields") or []
        definitions = []
        for raw in value:
            if isinstance(raw, CustomFieldDefinition):
                definitions.append(raw)
            elif isinstance(raw, Mapping):
                definitions.append(CustomFieldDefinition.from_raw(raw))
        return definitions

    @property
    def api_url(self) -> str:
        return f"{self.paperless_url.rstrip('/')}/api"

    @property
    def model_name(self) -> str:
        return {
            "openai": self.openai_model,
            "ollama": self.ollama_model,
            "custom": self.custom_model or "",
            "azure": self.azure_deployment_name or "",
        }[self.ai_provider]

    @property
    def uses_content(self) -> bool:
        return self.ai_content_source_mode in {"content", "both"}

    @property
    def uses_raw_document(self) -> bool:
        return self.ai_content_source_mode in {"raw_document", "both"}

    @property
    def active_custom_fields(self) -> List[CustomFieldDefinition]:
        return [
            f for f in self.ai_custom_fields
            if f.enabled and f.name and f.data_type != "documentlink"
        ]

    def validate_provider(self) -> None:
        """Fail fast when the selected provider is missing credentials."""
        missing = {
            "openai": [("OPENAI_API_KEY", self.openai_api_key)],
            "ollama": [("OLLAMA_URL", self.ollama_url), ("OLLAMA_MODEL", self.ollama_model)],
            "custom": [
                ("CUSTOM_BASE_URL", self.custom_base_url),
                ("CUSTOM_API_KEY", self.custom_api_key),
                ("CUSTOM_MODEL", self.custom_model),
            ],
            "azure": [
                ("AZURE_ENDPOINT", self.azure_endpoint),
                ("AZURE_API_KEY", self.azure_api_key),
                ("AZURE_DEPLOYMENT_NAME", self.azure_deployment_name),
            ],
        }[self.ai_provider]
        absent = [key for key, value in missing if not value]
        if absent:
            raise ConfigurationError(
                f"AI_PROVIDER={self.ai_provider} requires {', '.join(absent)}"
            )
        if not (self.paperless_token or self.paperless_token_file):
            raise ConfigurationError(
                "Neither PAPERLESS_TOKEN nor PAPERLESS_TOKEN_FILE is specified."
            )
        if self.external_api_enabled and not self.external_api_url:
            raise ConfigurationError("EXTERNAL_API_ENABLED requires EXTERNAL_API_URL")


def merge_sources(*sources: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Merge config sources left to right; only keys in ``DEFAULTS`` are kept.

    ``None`` values never override. Empty strings from the environment are
    treated as unset.
    """
    merged: Dict[str, Any] = dict(DEFAULTS)
    for source in sources:
        if not source:
            continue
        for key, value in source.items():
            key = key.upper()
            if key not in DEFAULTS or value is None:
                continue
            if isinstance(value, str) and value == "":
                continue
            merged[key] = value
    return merged


def read_config_file(path: Optional[str | Path]) -> Dict[str, Any]:
    if not path:
        return {}
    file_path = Path(path)
    if not file_path.is_file():
        raise ConfigurationError(f"CONFIG_FILE not found: {file_path}")
    data = safe_loads(file_path.read_bytes())
    if not isinstance(data, dict):
        raise ConfigurationError(f"CONFIG_FILE must hold a JSON object: {file_path}")
    return data


def load_settings(
    env: Optional[Mapping[str, str]] = None,
    file_path: Optional[str | Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> Settings:
    """Build ``Settings`` from defaults, file, environment and overrides."""
    env = os.environ if env is None else env
    file_path = file_path or env.get("CONFIG_FILE")
    merged = merge_sources(read_config_file(file_path), env, overrides)
    try:
        return Settings(**{key.lower(): value for key, value in merged.items()})
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


__all__ = [
    "DEFAULTS",
    "CustomFieldDefinition",
    "Settings",
    "merge_sources",
    "load_settings",
]
