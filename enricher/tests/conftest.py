from typing import Any, Dict, List, Optional

import pytest

from enricher.src.config import load_settings
from enricher.src.connectors.paperless_connector import PaperlessConnector
from enricher.src.errors import EntityConflictError, StoreWriteError
from enricher.src.models import CatalogEntity, Document, EntityKind, LLMResponse, TokenUsage


class MockPaperless:
    """In-memory stand-in for the Paperless connector that records every call."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.entities: Dict[EntityKind, List[CatalogEntity]] = {kind: [] for kind in EntityKind}
        self.documents: Dict[int, Document] = {}
        self.race_winners: Dict[str, CatalogEntity] = {}
        self.fail_patch = False
        self.next_id = 100

    def add_entity(self, kind: EntityKind, name: str, entity_id: Optional[int] = None, **extra) -> CatalogEntity:
        entity = CatalogEntity(id=entity_id or self._new_id(), name=name, **extra)
        self.entities[kind].append(entity)
        return entity

    def add_document(self, doc_id: int, **fields) -> Document:
        fields.setdefault("content", "Invoice from ACME Corp for consulting services in March.")
        document = Document(id=doc_id, **fields)
        self.documents[doc_id] = document
        return document

    def _new_id(self) -> int:
        self.next_id += 1
        return self.next_id

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    async def list_entities(self, kind: EntityKind) -> List[CatalogEntity]:
        self.calls.append(("list_entities", kind))
        return list(self.entities[kind])

    async def find_entity_by_name(self, kind: EntityKind, name: str) -> Optional[CatalogEntity]:
        self.calls.append(("find_entity_by_name", kind, name))
        for entity in self.entities[kind]:
            if entity.name.lower() == name.strip().lower():
                return entity
        return None

    async def create_entity(self, kind: EntityKind, payload: Dict[str, Any]) -> CatalogEntity:
        self.calls.append(("create_entity", kind, payload))
        key = payload["name"].lower()
        if key in self.race_winners:
            # another writer created it between our lookup and our create
            self.entities[kind].append(self.race_winners.pop(key))
            raise EntityConflictError(kind.label, payload["name"], "name already exists")
        return self.add_entity(kind, payload["name"])

    async def get_document(self, doc_id: int) -> Document:
        self.calls.append(("get_document", doc_id))
        return self.documents[doc_id]

    async def iter_documents(self, tag_ids=None):
        self.calls.append(("iter_documents", tag_ids))
        for doc_id in sorted(self.documents):
            document = self.documents[doc_id]
            if tag_ids and not set(tag_ids) & set(document.tags):
                continue
            yield {"id": doc_id, "title": document.title}

    async def update_document(self, doc_id: int, updates: Dict[str, Any]) -> Document:
        self.calls.append(("update_document", doc_id, updates))
        if self.fail_patch:
            raise StoreWriteError(doc_id, "500 Internal Server Error")
        current = self.documents[doc_id]
        payload = PaperlessConnector.merge_update(current, updates)
        updated = current.model_copy(update={k: v for k, v in payload.items() if k in Document.model_fields})
        self.documents[doc_id] = updated
        return updated

    async def set_document_tags(self, doc_id: int, tag_ids) -> Document:
        self.calls.append(("set_document_tags", doc_id, sorted(tag_ids)))
        updated = self.documents[doc_id].model_copy(update={"tags": sorted(tag_ids)})
        self.documents[doc_id] = updated
        return updated

    async def download_original(self, doc_id: int):
        self.calls.append(("download_original", doc_id))
        return b"%PDF-1.4 fake", "application/pdf"

    async def get_thumbnail(self, doc_id: int) -> bytes:
        self.calls.append(("get_thumbnail", doc_id))
        return b"thumb"


class MockLLM:
    """Replays queued replies; an Exception instance in the queue is raised."""

    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, system_prompt, user_content, schema=None) -> LLMResponse:
        self.calls.append({"system_prompt": system_prompt, "user_content": user_content, "schema": schema})
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(
            content=reply,
            usage=TokenUsage(prompt_tokens=120, completion_tokens=30, total_tokens=150),
        )


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides):
        env = {
            "PAPERLESS_TOKEN": "secret",
            "STATE_PATH": str(tmp_path / "state.json"),
            "LOG_FILE": str(tmp_path / "enricher.log"),
            "PROMPT_LOG_FILE": str(tmp_path / "prompts.log"),
        }
        return load_settings(env=env, overrides=overrides)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def paperless():
    return MockPaperless()


@pytest.fixture
def make_llm():
    return MockLLM
