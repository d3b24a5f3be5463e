import asyncio
import re
from collections import deque
from typing import Any, Deque, Dict, Mapping, Optional

from loguru import logger
from pydantic import ValidationError

from ..models import DocumentOutcome, QueueItem, WebhookPayload

DOCUMENT_URL_RE = re.compile(r"/documents/(\d+)/")


def document_id_from_payload(payload: Mapping[str, Any]) -> Optional[int]:
    """Accept ``{document_id, ...}`` or a legacy ``{url: .../documents/<id>/}``."""
    if payload.get("document_id") is not None:
        try:
            return WebhookPayload.model_validate(payload).document_id
        except ValidationError:
            return None
    if match := DOCUMENT_URL_RE.search(str(payload.get("url") or "")):
        return int(match.group(1))
    return None


class WebhookQueue:
    """FIFO of push-triggered documents with a single consumer.

    ``enqueue`` starts a drain task unless one is running. A drain processes
    items in arrival order until the queue is empty; the runner then clears
    the draining flag and checks the queue once more before it stops.
    """

    def __init__(self, processor):
        self.processor = processor
        self.items: Deque[QueueItem] = deque()
        self.draining = False
        self.outcomes: Deque[DocumentOutcome] = deque(maxlen=100)
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self.items)

    def enqueue(self, item: QueueItem) -> int:
        """Add an item and return its position in the queue (1-based)."""
        self.items.append(item)
        position = len(self.items)
        logger.info(f"[queue] enqueued doc {item.document_id} at position {position}")
        if not self.draining:
            self.draining = True
            self._task = asyncio.get_running_loop().create_task(self._run())
        return position

    def enqueue_payload(self, payload: Mapping[str, Any], prompt: Optional[str] = None) -> Optional[int]:
        doc_id = document_id_from_payload(payload)
        if doc_id is None:
            logger.warning(f"[queue] payload without a document id ignored: {dict(payload)}")
            return None
        return self.enqueue(QueueItem(document_id=doc_id, override_prompt=prompt or payload.get("prompt")))

    async def drain_once(self) -> int:
        """Process items from head to empty; returns how many were handled."""
        handled = 0
        while self.items:
            item = self.items.popleft()
            try:
                outcome = await self.processor.process_queue_item(item)
            except Exception as exc:
                logger.exception(f"[queue] doc {item.document_id} failed: {exc}")
            else:
                self.outcomes.append(outcome)
                logger.info(
                    f"[queue] doc {item.document_id}: {outcome.state.value} {outcome.reason}"
                    + (f" (retryable={outcome.retryable})" if outcome.failure else "")
                )
            handled += 1
        return handled

    async def _run(self):
        try:
            while True:
                await self.drain_once()
                self.draining = False
                if not self.items:
                    break
                self.draining = True
        finally:
            self.draining = False

    async def join(self):
        """Wait until the current drain, if any, has finished."""
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)

    def status(self) -> Dict[str, Any]:
        return {"queued": len(self.items), "draining": self.draining}


__all__ = ["WebhookQueue", "document_id_from_payload"]
