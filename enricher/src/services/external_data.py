from typing import Any, Optional

import httpx
from loguru import logger

from ..config import Settings
from ..processing.token_budget import TokenCounter
from ..utils import dumps

EXTERNAL_DATA_TOKEN_LIMIT = 500


def pick_path(data: Any, path: Optional[str]) -> Any:
    """Follow a dotted path (``a.b.0.c``) into nested dicts and lists."""
    if not path:
        return data
    for key in path.split("."):
        if isinstance(data, dict):
            data = data.get(key)
        elif isinstance(data, list) and key.isdigit() and int(key) < len(data):
            data = data[int(key)]
        else:
            return None
    return data


class ExternalDataService:
    """Fetches optional enrichment context from a configured HTTP endpoint."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.settings.external_api_enabled and self.settings.external_api_url)

    async def fetch(self) -> Optional[str]:
        """Return context text capped at 500 tokens, or None when unavailable.

        Enrichment is optional: failures are logged and the document is
        analyzed without it.
        """
        if not self.enabled:
            return None
        s = self.settings
        try:
            async with httpx.AsyncClient(timeout=s.external_api_timeout, transport=self._transport) as client:
                response = await client.request(
                    s.external_api_method.upper(),
                    s.external_api_url,
                    headers=s.external_api_headers,
                    json=s.external_api_body if s.external_api_method.upper() != "GET" else None,
                )
                response.raise_for_status()
                content_type = response.headers.get("content-type", "")
                data: Any = response.json() if "json" in content_type else response.text
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"[external] fetch from {s.external_api_url} failed: {exc}")
            return None

        data = pick_path(data, s.external_api_data_path)
        if data is None:
            return None
        text = data if isinstance(data, str) else dumps(data)
        text, truncated = TokenCounter(s.model_name).truncate(text, EXTERNAL_DATA_TOKEN_LIMIT)
        if truncated:
            logger.info(f"[external] context truncated to {EXTERNAL_DATA_TOKEN_LIMIT} tokens")
        return text or None


__all__ = ["ExternalDataService", "pick_path"]
