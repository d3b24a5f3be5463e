import asyncio
import time

import httpx
from loguru import logger

from ..config import Settings


class ServiceBootstrapper:
    """Waits for the store and the LLM endpoint before the first scan."""

    @staticmethod
    async def wait_for_http_service(url: str, timeout: int = 240, interval: float = 2.0):
        """Wait for HTTP service to become available."""
        logger.info(f"[bootstrap] Waiting for HTTP service: {url}")
        start_time = time.time()

        while time.time() - start_time < timeout:
            try:
                async with httpx.AsyncClient(timeout=5) as client:
                    response = await client.get(url)
                if 200 <= response.status_code < 500:
                    logger.info(f"[bootstrap] Available: {url}")
                    return
            except httpx.HTTPError as exc:
                logger.debug(f"[bootstrap] {url} not reachable yet: {exc}")
            await asyncio.sleep(interval)

        raise RuntimeError(f"Service not available: {url}")

    @staticmethod
    def llm_health_url(settings: Settings) -> str:
        if settings.ai_provider == "ollama":
            return f"{settings.ollama_url.rstrip('/')}/api/tags"
        if settings.ai_provider == "custom":
            return settings.custom_base_url
        if settings.ai_provider == "azure":
            return settings.azure_endpoint
        return "https://api.openai.com/v1/models"

    @classmethod
    async def bootstrap_all_services(cls, settings: Settings, paperless_connector, timeout: int = 600):
        """Bootstrap all required services."""
        await cls.wait_for_http_service(f"{settings.api_url}/", timeout=timeout)
        await cls.wait_for_http_service(cls.llm_health_url(settings), timeout=timeout)
        user_id = await paperless_connector.get_current_user_id()
        logger.info(f"[bootstrap] Services ready (paperless user id={user_id}).")
