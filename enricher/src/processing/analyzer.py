"""Builds the model request for one document and runs it with bounded retries.

The request is assembled from the token budget, the response schema and the
system prompt. The model call is attempted up to three times with a fixed
pause; empty replies, unparseable replies and transport errors (timeouts
included) all count as failed attempts.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, Field

from ..config import Settings
from ..errors import FailureKind
from ..models import Document, DocumentAnalysis, TokenUsage
from ..utils import TextUtils
from .entity_cache import CatalogSnapshot, RestrictionPolicy
from .prompts import build_system_prompt, prompt_tags_fragment
from .response_schema import Capabilities, build_response_schema, parse_analysis
from .token_budget import PayloadAllocation, allocate_payload

MAX_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 1.0

prompt_log = logger.bind(channel="prompt")


class AnalysisRequest(BaseModel):
    system_prompt: str
    user_content: Any
    response_schema: Dict[str, Any]
    allocation: PayloadAllocation


class AnalysisResult(BaseModel):
    analysis: Optional[DocumentAnalysis] = None
    usage: TokenUsage = Field(default_factory=TokenUsage)
    truncated: bool = False
    attempts: int = 0
    failure: Optional[FailureKind] = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.failure is None and self.analysis is not None


def data_url(content_type: str, b64: str) -> str:
    return f"data:{content_type};base64,{b64}"


class DocumentAnalyzer:
    """Turns a document into validated metadata suggestions."""

    def __init__(self, settings: Settings, llm, retry_delay: float = RETRY_DELAY_SECONDS):
        self.settings = settings
        self.llm = llm
        self.retry_delay = retry_delay
        self.capabilities = Capabilities.from_settings(settings)
        self.policy = RestrictionPolicy.from_settings(settings)

    def build_schema(self, snapshot: CatalogSnapshot) -> Dict[str, Any]:
        return build_response_schema(
            self.policy,
            self.capabilities,
            tag_names=snapshot.tags,
            correspondent_names=snapshot.correspondents,
            document_type_names=snapshot.document_types,
            custom_fields=self.settings.active_custom_fields if self.capabilities.custom_fields else [],
        )

    def _user_content(
        self,
        document: Document,
        allocation: PayloadAllocation,
        fragment: Optional[str],
        raw_content_type: Optional[str],
    ) -> Any:
        texts: List[str] = [t for t in (fragment, allocation.content) if t]
        mode = self.settings.ai_raw_document_mode
        if allocation.raw_payload is None or mode == "text":
            if allocation.raw_payload:
                texts.append(allocation.raw_payload)
            return "\n\n".join(texts)

        parts: List[Dict[str, Any]] = [
            {"type": "text", "text": "\n\n".join(texts) or "Analyze the attached document."}
        ]
        url = data_url(raw_content_type or "application/octet-stream", allocation.raw_payload)
        if mode == "image":
            parts.append({"type": "image_url", "image_url": {"url": url}})
        else:
            parts.append({
                "type": "file",
                "file": {"filename": f"document_{document.id}", "file_data": url},
            })
        return parts

    def build_request(
        self,
        document: Document,
        snapshot: CatalogSnapshot,
        raw: Optional[Tuple[bytes, str]] = None,
        override_prompt: Optional[str] = None,
        external_data: Optional[str] = None,
    ) -> AnalysisRequest:
        s = self.settings
        schema = self.build_schema(snapshot)
        system_prompt = build_system_prompt(s, snapshot, self.policy, schema, override_prompt, external_data)
        fragment = prompt_tags_fragment(s)

        content = None
        if s.uses_content:
            content = (document.content or "")[: s.content_max_chars]
        raw_bytes, raw_type = raw if raw else (None, None)

        allocation = allocate_payload(
            model_id=s.model_name,
            max_tokens=s.ai_token_limit,
            reserved_response_tokens=s.ai_response_tokens,
            system_prompt=system_prompt,
            fragments=[fragment] if fragment else [],
            content=content,
            raw_document=raw_bytes,
            raw_content_type=raw_type,
            raw_mode=s.ai_raw_document_mode,
        )
        user_content = self._user_content(document, allocation, fragment, raw_type) if allocation.ok else ""
        return AnalysisRequest(
            system_prompt=system_prompt,
            user_content=user_content,
            response_schema=schema,
            allocation=allocation,
        )

    async def analyze(
        self,
        document: Document,
        snapshot: CatalogSnapshot,
        raw: Optional[Tuple[bytes, str]] = None,
        override_prompt: Optional[str] = None,
        external_data: Optional[str] = None,
    ) -> AnalysisResult:
        request = self.build_request(document, snapshot, raw, override_prompt, external_data)
        allocation = request.allocation
        if not allocation.ok:
            logger.warning(f"[budget] doc {document.id}: {allocation.reason}")
            return AnalysisResult(failure=allocation.failure, reason=allocation.reason)

        logger.info(
            f"[llm] doc {document.id}: prompt={allocation.prompt_tokens} "
            f"available={allocation.budget.available_tokens} raw={allocation.raw_tokens} "
            f"truncated={allocation.truncated}"
        )
        prompt_log.info(
            f"doc {document.id}\n{request.system_prompt}\n--- user ---\n"
            f"{TextUtils.truncate_text(request.user_content, 2000)}"
        )

        reason = ""
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                response = await self.llm.complete(request.system_prompt, request.user_content, request.response_schema)
            except Exception as exc:  # provider error types differ per backend
                reason = f"{type(exc).__name__}: {exc}"
            else:
                if response.is_empty:
                    reason = "empty response"
                else:
                    parsed = parse_analysis(response.content, request.response_schema)
                    if parsed.ok:
                        return AnalysisResult(
                            analysis=parsed.analysis,
                            usage=response.usage,
                            truncated=allocation.truncated,
                            attempts=attempt,
                        )
                    reason = parsed.error or "invalid response"
                    logger.debug(f"[llm] unparseable reply: {TextUtils.truncate_text(response.content, 500)}")

            logger.warning(f"[llm] doc {document.id} attempt {attempt}/{MAX_ATTEMPTS} failed: {reason}")
            if attempt < MAX_ATTEMPTS:
                await asyncio.sleep(self.retry_delay)

        return AnalysisResult(
            failure=FailureKind.AI_RESPONSE,
            reason=reason,
            attempts=MAX_ATTEMPTS,
            truncated=allocation.truncated,
        )


__all__ = ["DocumentAnalyzer", "AnalysisResult", "AnalysisRequest", "MAX_ATTEMPTS"]
