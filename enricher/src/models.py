"""Pydantic models shared by the connectors, the pipeline and the queue."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import FailureKind, RETRYABLE_FAILURES


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class EntityKind(str, Enum):
    TAG = "tags"
    CORRESPONDENT = "correspondents"
    DOCUMENT_TYPE = "document_types"
    CUSTOM_FIELD = "custom_fields"

    @property
    def label(self) -> str:
        return self.value.rstrip("s").replace("_", " ")


class CatalogEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    data_type: Optional[str] = None
    extra_data: Optional[Dict[str, Any]] = None


class Document(BaseModel):
    """The subset of a Paperless document the pipeline reads."""

    model_config = ConfigDict(extra="ignore")

    id: int
    title: str = ""
    content: str = ""
    tags: List[int] = Field(default_factory=list)
    correspondent: Optional[int] = None
    document_type: Optional[int] = None
    created: Optional[str] = None
    custom_fields: List[Dict[str, Any]] = Field(default_factory=list)
    user_can_change: bool = Field(True, description="Edit permission granted to the acting user")
    mime_type: Optional[str] = None

    @property
    def editable(self) -> bool:
        return self.user_can_change


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class LLMResponse(BaseModel):
    content: str = ""
    usage: TokenUsage = Field(default_factory=TokenUsage)

    @property
    def is_empty(self) -> bool:
        return not self.content.strip()


class DocumentAnalysis(BaseModel):
    """Normalized metadata suggested by the model."""

    title: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    correspondent: Optional[str] = None
    document_type: Optional[str] = None
    document_date: Optional[str] = None
    language: Optional[str] = None
    content: Optional[str] = None
    custom_fields: Dict[str, Any] = Field(default_factory=dict)


class QueueItem(BaseModel):
    document_id: int
    override_prompt: Optional[str] = None


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_type: Optional[str] = None
    document_id: int
    document_info: Optional[Dict[str, Any]] = None


class ProcessingStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETE = "complete"


class ProcessingRecord(BaseModel):
    document_id: int
    title: str = ""
    status: ProcessingStatus = ProcessingStatus.PROCESSING
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
    metrics: TokenUsage = Field(default_factory=TokenUsage)
    original: Dict[str, Any] = Field(default_factory=dict)
    history: List[Dict[str, Any]] = Field(default_factory=list)
    last_error: Optional[str] = None


class DocumentState(str, Enum):
    SKIPPED = "skipped"
    COMPLETE = "complete"
    FAILED = "failed"


class DocumentOutcome(BaseModel):
    """Result of one pipeline run for a single document."""

    document_id: int
    state: DocumentState
    reason: str = ""
    failure: Optional[FailureKind] = None

    @property
    def retryable(self) -> bool:
        return self.failure in RETRYABLE_FAILURES

    @classmethod
    def skipped(cls, doc_id: int, reason: str, failure: Optional[FailureKind] = None) -> "DocumentOutcome":
        return cls(document_id=doc_id, state=DocumentState.SKIPPED, reason=reason, failure=failure)

    @classmethod
    def failed(cls, doc_id: int, failure: FailureKind, reason: str) -> "DocumentOutcome":
        return cls(document_id=doc_id, state=DocumentState.FAILED, reason=reason, failure=failure)

    @classmethod
    def complete(cls, doc_id: int, reason: str = "") -> "DocumentOutcome":
        return cls(document_id=doc_id, state=DocumentState.COMPLETE, reason=reason)


__all__ = [
    "EntityKind",
    "CatalogEntity",
    "Document",
    "TokenUsage",
    "LLMResponse",
    "DocumentAnalysis",
    "QueueItem",
    "WebhookPayload",
    "ProcessingStatus",
    "ProcessingRecord",
    "DocumentState",
    "DocumentOutcome",
    "utc_now",
]
