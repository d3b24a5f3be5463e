"""Chat-model client behind a single ``complete`` call.

Providers are langchain chat models: ``ChatOllama`` for Ollama, ``ChatOpenAI``
for OpenAI and OpenAI-compatible endpoints, ``AzureChatOpenAI`` for Azure.
The structured-output schema is bound per call (``format`` for Ollama,
``response_format`` for OpenAI-style providers) and is advisory: the caller
still validates the returned text.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Union

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama
from langchain_openai import AzureChatOpenAI, ChatOpenAI
from loguru import logger

from ..config import Settings
from ..models import LLMResponse, TokenUsage

UserContent = Union[str, List[Dict[str, Any]]]

# OpenAI models known to honour json_schema response formats.
STRUCTURED_OUTPUT_FAMILIES = ("gpt-4o", "gpt-4.1", "gpt-4.5", "gpt-5", "o1", "o3", "o4")


def build_chat_model(settings: Settings) -> BaseChatModel:
    """Create the langchain chat model for the configured provider."""
    settings.validate_provider()
    provider = settings.ai_provider
    common = {"temperature": 0.3, "max_tokens": settings.ai_response_tokens}

    if provider == "ollama":
        return ChatOllama(
            model=settings.ollama_model,
            base_url=settings.ollama_url,
            temperature=common["temperature"],
            num_predict=settings.ai_response_tokens,
            num_ctx=settings.ai_token_limit,
        )
    if provider == "openai":
        return ChatOpenAI(
            model=settings.openai_model,
            api_key=settings.openai_api_key,
            timeout=settings.llm_timeout,
            max_retries=0,
            **common,
        )
    if provider == "custom":
        return ChatOpenAI(
            model=settings.custom_model,
            api_key=settings.custom_api_key,
            base_url=settings.custom_base_url,
            timeout=settings.llm_timeout,
            max_retries=0,
            **common,
        )
    return AzureChatOpenAI(
        azure_endpoint=settings.azure_endpoint,
        api_key=settings.azure_api_key,
        azure_deployment=settings.azure_deployment_name,
        api_version=settings.azure_api_version,
        timeout=settings.llm_timeout,
        max_retries=0,
        **common,
    )


def usage_from_message(message: AIMessage) -> TokenUsage:
    usage = getattr(message, "usage_metadata", None) or {}
    prompt = int(usage.get("input_tokens") or 0)
    completion = int(usage.get("output_tokens") or 0)
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=int(usage.get("total_tokens") or prompt + completion),
    )


def message_text(message: AIMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(str(part.get("text", "")))
    return "".join(parts)


class LLMConnector:
    """Single-call chat client returning text plus token usage."""

    def __init__(self, settings: Settings, model: Optional[BaseChatModel] = None):
        self.settings = settings
        self.provider = settings.ai_provider
        self.model_name = settings.model_name
        self.model = model if model is not None else build_chat_model(settings)
        self.timeout = settings.llm_timeout

    def _bind_schema(self, schema: Optional[Dict[str, Any]]):
        if not schema:
            return self.model
        if self.provider == "ollama":
            return self.model.bind(format=schema)
        if self.provider == "custom":
            return self.model
        if self.model_name.lower().rsplit("/", 1)[-1].startswith(STRUCTURED_OUTPUT_FAMILIES):
            return self.model.bind(
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": "document_analysis", "schema": schema},
                }
            )
        return self.model.bind(response_format={"type": "json_object"})

    async def complete(
        self,
        system_prompt: str,
        user_content: UserContent,
        schema: Optional[Dict[str, Any]] = None,
    ) -> LLMResponse:
        """Send one chat request; raises on transport errors and timeouts."""
        runnable = self._bind_schema(schema)
        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_content)]
        message = await asyncio.wait_for(runnable.ainvoke(messages), timeout=self.timeout)
        response = LLMResponse(content=message_text(message), usage=usage_from_message(message))
        logger.debug(
            f"[llm] {self.provider}/{self.model_name} tokens="
            f"{response.usage.prompt_tokens}+{response.usage.completion_tokens}"
        )
        return response


__all__ = ["LLMConnector", "build_chat_model", "usage_from_message", "message_text", "UserContent"]
