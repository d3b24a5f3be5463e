import asyncio
from collections import Counter
from typing import Optional, Tuple

import httpx
from loguru import logger

from ..config import Settings
from ..errors import EnricherError, FailureKind, StoreWriteError
from ..models import Document, DocumentOutcome, DocumentState, EntityKind, QueueItem
from .analyzer import DocumentAnalyzer
from .entity_cache import CatalogCaches, CatalogSnapshot
from .response_schema import Capabilities
from .state_manager import StateManager
from .update_builder import build_update


class DocumentProcessor:
    """Per-document enrichment pipeline shared by the scan and the webhook queue.

    ``lock`` serializes all pipeline work: a scan holds it for its whole run,
    the queue takes it per item, so two documents are never in flight at once.
    """

    def __init__(
        self,
        settings: Settings,
        paperless_connector,
        analyzer: DocumentAnalyzer,
        caches: CatalogCaches,
        state_manager: StateManager,
        external_data=None,
    ):
        self.settings = settings
        self.paperless_connector = paperless_connector
        self.analyzer = analyzer
        self.caches = caches
        self.state_manager = state_manager
        self.external_data = external_data
        self.capabilities = Capabilities.from_settings(settings)
        self.lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self.lock.locked()

    async def gate(self, doc_id: int) -> Tuple[Optional[Document], Optional[DocumentOutcome]]:
        """Return the document if it should be processed, else a skip outcome."""
        if self.state_manager.is_complete(doc_id):
            logger.info(f"[doc] skip id={doc_id}: already processed")
            return None, DocumentOutcome.skipped(doc_id, "already processed")

        document = await self.paperless_connector.get_document(doc_id)
        if not document.editable:
            logger.info(f"[doc] skip id={doc_id}: not editable for this user")
            return None, DocumentOutcome.skipped(doc_id, "not editable", FailureKind.PERMISSION_DENIED)

        s = self.settings
        if s.ai_content_source_mode == "content" and len(document.content.strip()) < s.min_content_length:
            logger.info(f"[doc] skip id={doc_id}: content shorter than {s.min_content_length} chars")
            return None, DocumentOutcome.skipped(doc_id, "content too short")

        return document, None

    async def cache_thumbnail(self, doc_id: int):
        target_dir = self.settings.thumbnail_dir
        if not target_dir:
            return
        target = target_dir / f"{doc_id}.png"
        if target.exists():
            return
        try:
            data = await self.paperless_connector.get_thumbnail(doc_id)
            target_dir.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except (httpx.HTTPError, OSError) as exc:
            logger.warning(f"[doc] thumbnail for id={doc_id} not cached: {exc}")

    async def fetch_inputs(self, document: Document) -> Tuple[Optional[Tuple[bytes, str]], Optional[str]]:
        raw = None
        if self.settings.uses_raw_document:
            raw = await self.paperless_connector.download_original(document.id)
            logger.info(f"[doc] raw original id={document.id} {len(raw[0])} bytes ({raw[1]})")
        external = await self.external_data.fetch() if self.external_data is not None else None
        await self.cache_thumbnail(document.id)
        return raw, external

    async def post_process(self, document: Document) -> Document:
        """Apply the configured tag additions and removals after the main write."""
        s = self.settings
        add_names = list(s.tags_to_add) if s.add_tags else []
        if s.add_ai_processed_tag:
            add_names.append(s.ai_processed_tag_name)
        remove_names = list(s.tags_to_remove) if s.remove_tags else []
        if not add_names and not remove_names:
            return document

        added = await self.caches.resolve(EntityKind.TAG, add_names, restrict=False)
        remove_ids = set()
        for name in remove_names:
            entity = await self.caches.tags.find(name)
            if entity is not None:
                remove_ids.add(entity.id)

        tags = (set(document.tags) | set(added.ids)) - remove_ids
        if tags == set(document.tags):
            return document
        logger.info(f"[doc] post-processing tags id={document.id}: +{added.ids} -{sorted(remove_ids)}")
        return await self.paperless_connector.set_document_tags(document.id, tags)

    async def _process(
        self, doc_id: int, override_prompt: Optional[str], snapshot: Optional[CatalogSnapshot]
    ) -> DocumentOutcome:
        document, skipped = await self.gate(doc_id)
        if skipped is not None:
            return skipped

        snapshot = snapshot or await self.caches.snapshot()
        self.state_manager.mark_processing(document)
        raw, external = await self.fetch_inputs(document)

        result = await self.analyzer.analyze(document, snapshot, raw, override_prompt, external)
        if not result.ok:
            logger.error(f"[doc] analysis failed id={doc_id}: {result.failure.value} {result.reason}")
            self.state_manager.mark_failed(doc_id, result.reason)
            return DocumentOutcome.failed(doc_id, result.failure, result.reason)

        plan = await build_update(result.analysis, document, self.caches, self.capabilities)
        try:
            updated = await self.paperless_connector.update_document(doc_id, plan.payload)
        except StoreWriteError as exc:
            logger.error(f"[doc] write-back failed id={doc_id}: {exc}")
            self.state_manager.mark_failed(doc_id, str(exc))
            return DocumentOutcome.failed(doc_id, FailureKind.STORE_WRITE, str(exc))

        try:
            updated = await self.post_process(updated)
        except (EnricherError, httpx.HTTPError) as exc:
            logger.error(f"[doc] post-processing failed id={doc_id}: {exc}")

        changes = {
            "tags": updated.tags,
            "correspondent": updated.correspondent,
            "document_type": updated.document_type,
            "title": updated.title,
            "unresolved": plan.errors,
            "truncated": result.truncated,
        }
        try:
            self.state_manager.mark_complete(doc_id, updated.title, result.usage, changes)
        except OSError as exc:
            logger.error(f"[state] record for id={doc_id} not saved: {exc}")

        logger.info(f"[doc] done id={doc_id} title={updated.title!r}")
        return DocumentOutcome.complete(doc_id)

    async def process_document(
        self,
        doc_id: int,
        override_prompt: Optional[str] = None,
        snapshot: Optional[CatalogSnapshot] = None,
    ) -> DocumentOutcome:
        """Run the full pipeline for one document; never raises."""
        logger.info(f"[doc] consider id={doc_id}")
        try:
            return await self._process(doc_id, override_prompt, snapshot)
        except httpx.HTTPError as exc:
            logger.error(f"[doc] store request failed id={doc_id}: {exc}")
            return DocumentOutcome.failed(doc_id, FailureKind.STORE_READ, str(exc) or type(exc).__name__)
        except Exception as exc:
            logger.exception(f"[doc] unexpected failure id={doc_id}")
            return DocumentOutcome.failed(doc_id, FailureKind.UNEXPECTED, str(exc))

    async def process_queue_item(self, item: QueueItem) -> DocumentOutcome:
        async with self.lock:
            return await self.process_document(item.document_id, item.override_prompt)

    async def predefined_tag_ids(self) -> Optional[list]:
        if not self.settings.process_predefined_documents:
            return None
        resolution = await self.caches.resolve(EntityKind.TAG, self.settings.predefined_tags, restrict=True)
        if resolution.errors:
            logger.warning(f"[scan] predefined tags not found: {[e['name'] for e in resolution.errors]}")
        return resolution.ids

    async def run_main_process(self) -> Optional[Counter]:
        """Scan the store and process documents in listing order.

        Skipped, and returns None, when another run holds the lock.
        """
        if self.lock.locked():
            logger.warning("[scan] processing already in progress; scan skipped.")
            return None

        async with self.lock:
            counts: Counter = Counter()
            snapshot = await self.caches.snapshot()
            tag_ids = await self.predefined_tag_ids()
            if tag_ids is not None and not tag_ids:
                logger.warning("[scan] predefined-documents mode without any known tag; nothing to do")
                return counts

            async for listed in self.paperless_connector.iter_documents(tag_ids):
                doc_id = int(listed["id"])
                if self.state_manager.is_complete(doc_id):
                    counts["already_processed"] += 1
                    continue
                outcome = await self.process_document(doc_id, snapshot=snapshot)
                counts[outcome.state.value] += 1
                if outcome.state is DocumentState.FAILED:
                    counts["retryable" if outcome.retryable else "terminal"] += 1

            logger.info(f"[run] completed; {dict(counts)}")
            return counts


__all__ = ["DocumentProcessor"]
