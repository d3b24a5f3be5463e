"""Error taxonomy for the enricher.

Exceptions are only raised at I/O boundaries (configuration loading, store
writes, entity creation). Pipeline stages report failures as ``FailureKind``
values on their result objects so the caller can tell retryable from terminal
outcomes without inspecting exception types.
"""

from __future__ import annotations

from enum import Enum


class EnricherError(Exception):
    """Base class for enricher errors."""


class ConfigurationError(EnricherError):
    """Missing or invalid provider credentials or settings."""


class EntityConflictError(EnricherError):
    """The store rejected an entity creation, usually because the name exists."""

    def __init__(self, kind: str, name: str, detail: str = ""):
        self.kind = kind
        self.name = name
        self.detail = detail
        super().__init__(f"{kind} '{name}' could not be created: {detail or 'conflict'}")


class StoreWriteError(EnricherError):
    """A partial update could not be written back to the store."""

    def __init__(self, doc_id: int, detail: str):
        self.doc_id = doc_id
        self.detail = detail
        super().__init__(f"update of document {doc_id} failed: {detail}")


class FailureKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    TOKEN_BUDGET_EXCEEDED = "token_budget_exceeded"
    AI_RESPONSE = "ai_response"
    STORE_READ = "store_read"
    STORE_WRITE = "store_write"
    UNEXPECTED = "unexpected"


RETRYABLE_FAILURES = frozenset({FailureKind.AI_RESPONSE, FailureKind.STORE_READ, FailureKind.UNEXPECTED})


__all__ = [
    "EnricherError",
    "ConfigurationError",
    "EntityConflictError",
    "StoreWriteError",
    "FailureKind",
    "RETRYABLE_FAILURES",
]
