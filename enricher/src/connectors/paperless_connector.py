import asyncio
import contextlib
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

import httpx
from loguru import logger

from ..config import Settings
from ..errors import EntityConflictError, StoreWriteError
from ..models import CatalogEntity, Document, EntityKind
from ..utils import TextUtils

PAGE_SIZE = 100
TITLE_LIMIT = 128
TITLE_KEEP = 124
DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y", "%d-%m-%Y")


def normalize_date(value: Any) -> Optional[str]:
    """Return ``YYYY-MM-DD`` for ISO, ``dd.mm.yyyy`` or ``dd-mm-yyyy`` input, else None."""
    text = str(value or "").strip()
    if not text:
        return None
    with contextlib.suppress(ValueError):
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
    for fmt in DATE_FORMATS:
        with contextlib.suppress(ValueError):
            return datetime.strptime(text[:10], fmt).date().isoformat()
    return None


class PaperlessConnector:
    """Async client for the Paperless-ngx REST API."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def wait_for_token(self, timeout_seconds: int = 0) -> str:
        """Wait for a Paperless authentication token."""
        if self.settings.paperless_token:
            return self.settings.paperless_token

        token_path = self.settings.paperless_token_file
        if not token_path:
            raise RuntimeError(
                "Neither PAPERLESS_TOKEN nor PAPERLESS_TOKEN_FILE is specified."
            )

        logger.info(f"[bootstrap] Watching token: {token_path}")
        deadline = (time.time() + timeout_seconds) if timeout_seconds > 0 else None

        while True:
            with contextlib.suppress(OSError):
                if os.path.isfile(token_path) and os.path.getsize(token_path) > 0:
                    content = Path(token_path).read_text(encoding="utf-8").strip()
                    if content and content.upper() != "PENDING":
                        logger.info("[bootstrap] Paperless token read.")
                        return content

            if deadline and time.time() > deadline:
                raise RuntimeError("Token not available within the specified time.")
            await asyncio.sleep(2)

    async def get_headers(self) -> Dict[str, str]:
        token = await self.wait_for_token()
        return {"Authorization": f"Token {token}", "Accept": "application/json"}

    async def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.settings.api_url}/",
                headers=await self.get_headers(),
                timeout=self.settings.paperless_timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def relative_next(self, next_url: str) -> str:
        """Rewrite an absolute ``next`` link to a path under the API base.

        Paperless behind a proxy may hand out links with another scheme or
        host; only the path and query are trusted.
        """
        url = httpx.URL(next_url)
        base_path = httpx.URL(f"{self.settings.api_url}/").path
        path = url.path
        if path.startswith(base_path):
            path = path[len(base_path):]
        path = path.lstrip("/")
        query = url.query.decode("ascii")
        return f"{path}?{query}" if query else path

    async def iter_pages(self, path: str, params: Optional[Dict[str, Any]] = None) -> AsyncIterator[Dict]:
        """Yield every result of a paginated list endpoint, following ``next``."""
        client = await self.client()
        url: Optional[str] = path
        request_params = {"page_size": PAGE_SIZE, **(params or {})}

        while url:
            response = await client.get(url, params=request_params)
            response.raise_for_status()
            data = response.json()
            for item in data.get("results", []):
                yield item
            next_url = data.get("next")
            url = self.relative_next(next_url) if next_url else None
            request_params = None

    async def iter_documents(self, tag_ids: Optional[Iterable[int]] = None) -> AsyncIterator[Dict]:
        params: Dict[str, Any] = {"ordering": "id"}
        if tag_ids:
            params["tags__id__in"] = ",".join(str(t) for t in tag_ids)
        async for document in self.iter_pages("documents/", params):
            yield document

    async def list_entities(self, kind: EntityKind) -> List[CatalogEntity]:
        return [CatalogEntity.model_validate(item) async for item in self.iter_pages(f"{kind.value}/")]

    async def find_entity_by_name(self, kind: EntityKind, name: str) -> Optional[CatalogEntity]:
        """Case-insensitive exact-name lookup straight against the store."""
        client = await self.client()
        response = await client.get(f"{kind.value}/", params={"name__iexact": name})
        response.raise_for_status()
        wanted = TextUtils.normalize_name(name)
        for item in response.json().get("results", []):
            if TextUtils.normalize_name(item.get("name")) == wanted:
                return CatalogEntity.model_validate(item)
        return None

    async def create_entity(self, kind: EntityKind, payload: Dict[str, Any]) -> CatalogEntity:
        """Create a catalogue entry; HTTP 400 is reported as a name conflict."""
        client = await self.client()
        response = await client.post(f"{kind.value}/", json=payload)
        if response.status_code == 400:
            raise EntityConflictError(kind.label, payload.get("name", ""), response.text)
        response.raise_for_status()
        entity = CatalogEntity.model_validate(response.json())
        logger.info(f"[paperless] created {kind.label} '{entity.name}' id={entity.id}")
        return entity

    async def get_document(self, doc_id: int) -> Document:
        client = await self.client()
        response = await client.get(f"documents/{doc_id}/")
        response.raise_for_status()
        return Document.model_validate(response.json())

    async def can_edit(self, doc_id: int) -> bool:
        return (await self.get_document(doc_id)).editable

    async def download_original(self, doc_id: int) -> Tuple[bytes, str]:
        client = await self.client()
        response = await client.get(f"documents/{doc_id}/download/", params={"original": "true"})
        response.raise_for_status()
        content_type = response.headers.get("content-type", "application/octet-stream").split(";")[0]
        return response.content, content_type

    async def get_thumbnail(self, doc_id: int) -> bytes:
        client = await self.client()
        response = await client.get(f"documents/{doc_id}/thumb/")
        response.raise_for_status()
        return response.content

    async def get_current_user_id(self) -> Optional[int]:
        client = await self.client()
        response = await client.get("ui_settings/")
        response.raise_for_status()
        return (response.json().get("user") or {}).get("id")

    @staticmethod
    def merge_update(current: Document, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Apply store write rules to a partial update.

        Tags are unioned with the current set, an existing correspondent is
        kept, dates are normalized and titles are capped.
        """
        payload = dict(updates)

        if "tags" in payload:
            payload["tags"] = sorted(set(current.tags) | set(payload["tags"] or []))

        if current.correspondent is not None and "correspondent" in payload:
            logger.debug(f"[paperless] keeping correspondent of doc {current.id}")
            payload.pop("correspondent")

        if "created" in payload:
            created = normalize_date(payload["created"])
            if created:
                payload["created"] = created
            else:
                logger.warning(f"[paperless] dropping unparseable date {payload['created']!r} for doc {current.id}")
                payload.pop("created")

        if payload.get("title"):
            payload["title"] = TextUtils.cap_length(str(payload["title"]), TITLE_LIMIT, TITLE_KEEP)

        return payload

    async def _patch(self, doc_id: int, payload: Dict[str, Any]) -> Document:
        client = await self.client()
        try:
            response = await client.patch(f"documents/{doc_id}/", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise StoreWriteError(doc_id, f"{exc.response.status_code} {exc.response.text[:500]}") from exc
        except httpx.HTTPError as exc:
            raise StoreWriteError(doc_id, str(exc) or type(exc).__name__) from exc
        return Document.model_validate(response.json())

    async def update_document(self, doc_id: int, updates: Dict[str, Any]) -> Document:
        """PATCH a document with merge semantics and return the stored result."""
        current = await self.get_document(doc_id)
        payload = self.merge_update(current, updates)
        if not payload:
            return current
        logger.info(f"[paperless] update doc {doc_id}: {TextUtils.truncate_text(payload, 500)}")
        return await self._patch(doc_id, payload)

    async def set_document_tags(self, doc_id: int, tag_ids: Iterable[int]) -> Document:
        """Replace the tag set of a document."""
        return await self._patch(doc_id, {"tags": sorted(set(tag_ids))})


__all__ = ["PaperlessConnector", "normalize_date"]
