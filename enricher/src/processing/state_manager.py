import contextlib
import os
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from loguru import logger

from ..models import Document, ProcessingRecord, ProcessingStatus, TokenUsage, utc_now
from ..utils import dumps, safe_loads


class StateManager:
    """Persists processing records and answers idempotency checks."""

    def __init__(self, state_path: Path):
        self.state_path = Path(state_path)
        self.records: Dict[int, ProcessingRecord] = {}
        self._load_state()

    def _load_state(self):
        """Load records from the state file if it exists."""
        if self.state_path.exists():
            with contextlib.suppress(OSError, ValueError):
                data = safe_loads(self.state_path.read_bytes())
                self.records = {
                    int(doc_id): ProcessingRecord.model_validate(raw)
                    for doc_id, raw in (data.get("documents") or {}).items()
                }
        logger.debug(f"[state] loaded {len(self.records)} records from {self.state_path}")

    def save_state(self):
        """Write all records; the file is replaced atomically."""
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.state_path.with_suffix(self.state_path.suffix + ".tmp")
        payload = {"documents": {str(k): v.model_dump(mode="json") for k, v in self.records.items()}}
        tmp_path.write_text(dumps(payload), encoding="utf-8")
        os.replace(tmp_path, self.state_path)

    def get(self, doc_id: int) -> Optional[ProcessingRecord]:
        return self.records.get(doc_id)

    def is_complete(self, doc_id: int) -> bool:
        record = self.records.get(doc_id)
        return record is not None and record.status == ProcessingStatus.COMPLETE

    def mark_processing(self, document: Document) -> ProcessingRecord:
        """Open (or reopen) the record and remember the pre-update values once."""
        record = self.records.get(document.id)
        if record is None:
            record = ProcessingRecord(
                document_id=document.id,
                title=document.title,
                original={
                    "tags": list(document.tags),
                    "correspondent": document.correspondent,
                    "document_type": document.document_type,
                    "title": document.title,
                },
            )
            self.records[document.id] = record
        record.status = ProcessingStatus.PROCESSING
        record.updated_at = utc_now()
        self.save_state()
        logger.info(f"[state] processing id={document.id}")
        return record

    def mark_failed(self, doc_id: int, reason: str):
        record = self.records.get(doc_id)
        if record is None:
            return
        record.last_error = reason
        record.updated_at = utc_now()
        self.save_state()

    def mark_complete(self, doc_id: int, title: str, usage: TokenUsage, changes: Dict[str, Any]):
        record = self.records.get(doc_id) or ProcessingRecord(document_id=doc_id)
        record.title = title
        record.status = ProcessingStatus.COMPLETE
        record.metrics = usage
        record.last_error = None
        record.updated_at = utc_now()
        record.history.append({"at": record.updated_at, **changes})
        self.records[doc_id] = record
        self.save_state()
        logger.info(
            f"[state] complete id={doc_id} tokens={usage.total_tokens}"
        )

    def reset(self, document_ids: Optional[Iterable[int]] = None) -> int:
        """Forget records so the documents are processed again; None means all."""
        if document_ids is None:
            removed = len(self.records)
            self.records.clear()
        else:
            removed = sum(1 for d in set(document_ids) if self.records.pop(d, None) is not None)
        self.save_state()
        logger.info(f"[state] reset {removed} records")
        return removed
