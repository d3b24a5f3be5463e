"""Token budgeting for a single model request.

A request has to fit a fixed context window shared by the system prompt,
auxiliary prompt fragments, an optional raw document and the document content.
``allocate_payload`` counts what is fixed, derives the room left for content,
and truncates the content to fit. Counting is exact (tiktoken) for known
OpenAI model families and an estimate of ``ceil(chars / 4)`` otherwise. The
same ``TokenCounter`` is used for counting and truncation within one call.
"""

from __future__ import annotations

import base64
import math
from typing import Iterable, Optional, Tuple

import tiktoken
from loguru import logger
from pydantic import BaseModel, model_validator

from ..errors import FailureKind

EXACT_TOKENIZER_FAMILIES = (
    "gpt-4o-mini",
    "gpt-4o",
    "gpt-4.1",
    "gpt-4.5",
    "gpt-4",
    "gpt-3.5-turbo",
    "o1",
    "o3",
    "o4-mini",
    "text-davinci",
)
CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4
# Word-boundary back-off is skipped if it would cut below this share of the target.
WORD_BOUNDARY_MIN_RATIO = 0.8


def has_exact_tokenizer(model_id: str) -> bool:
    """True when the model id (minus any ``vendor/`` prefix) starts with a known family."""
    model = (model_id or "").lower().rsplit("/", 1)[-1]
    return model.startswith(EXACT_TOKENIZER_FAMILIES)


class TokenCounter:
    """Counts and truncates tokens for one model id."""

    def __init__(self, model_id: str):
        self.model_id = model_id or ""
        self.encoder = self._load_encoder(self.model_id) if has_exact_tokenizer(self.model_id) else None

    @staticmethod
    def _load_encoder(model_id: str):
        try:
            try:
                return tiktoken.encoding_for_model(model_id)
            except KeyError:
                return tiktoken.get_encoding("cl100k_base")
        except Exception as exc:
            logger.warning(f"[budget] tokenizer unavailable for {model_id}, estimating: {exc}")
            return None

    @property
    def exact(self) -> bool:
        return self.encoder is not None

    def count(self, text: Optional[str]) -> int:
        if not text:
            return 0
        if self.encoder is not None:
            return len(self.encoder.encode(text, disallowed_special=()))
        return math.ceil(len(text) / CHARS_PER_TOKEN)

    def truncate(self, text: str, max_tokens: int) -> Tuple[str, bool]:
        """Return ``(text, truncated)`` with text cut to at most ``max_tokens``."""
        if not text:
            return text or "", False
        if max_tokens <= 0:
            return "", True

        if self.encoder is not None:
            tokens = self.encoder.encode(text, disallowed_special=())
            if len(tokens) <= max_tokens:
                return text, False
            # a cut inside a multi-byte character decodes to U+FFFD
            truncated = self.encoder.decode(tokens[:max_tokens]).rstrip("\ufffd")
            while truncated and self.count(truncated) > max_tokens:
                truncated = truncated[:-1]
            return truncated, True

        max_chars = max_tokens * CHARS_PER_TOKEN
        if len(text) <= max_chars:
            return text, False
        truncated = text[:max_chars]
        last_space = truncated.rfind(" ")
        if last_space > max_chars * WORD_BOUNDARY_MIN_RATIO:
            truncated = truncated[:last_space]
        return truncated, True


class TokenBudget(BaseModel):
    max_tokens: int
    reserved_tokens: int
    available_tokens: int

    @model_validator(mode="after")
    def _balanced(self) -> "TokenBudget":
        if self.reserved_tokens + self.available_tokens != self.max_tokens:
            raise ValueError("reserved_tokens + available_tokens must equal max_tokens")
        return self

    @property
    def exhausted(self) -> bool:
        return self.available_tokens <= 0


def compute_budget(max_tokens: int, reserved_response_tokens: int, prompt_tokens: int) -> TokenBudget:
    reserved = prompt_tokens + reserved_response_tokens
    return TokenBudget(
        max_tokens=max_tokens,
        reserved_tokens=reserved,
        available_tokens=max_tokens - reserved,
    )


def count_prompt_tokens(counter: TokenCounter, system_prompt: str, fragments: Iterable[str] = ()) -> int:
    """System prompt plus non-empty fragments, each message billed a fixed overhead."""
    present = [f for f in fragments if f]
    message_count = 1 + len(present)
    return (
        counter.count(system_prompt)
        + sum(counter.count(f) for f in present)
        + MESSAGE_OVERHEAD_TOKENS * message_count
    )


def encode_raw_document(raw: bytes, content_type: Optional[str], mode: str) -> Tuple[str, str]:
    """Return ``(payload, counted_text)`` for a raw document.

    Text mode sends a self-describing header plus base64 and counts all of it;
    file and image modes send bare base64 as an attachment and count that.
    """
    b64 = base64.b64encode(raw).decode("ascii")
    if mode == "text":
        text = (
            f"RAW_DOCUMENT_BASE64 (content-type: {content_type or 'application/octet-stream'}, "
            f"size: {len(raw)} bytes):\n{b64}"
        )
        return text, text
    return b64, b64


class PayloadAllocation(BaseModel):
    """Outcome of fitting a request into the token window."""

    budget: TokenBudget
    prompt_tokens: int
    content: str = ""
    raw_payload: Optional[str] = None
    raw_tokens: int = 0
    truncated: bool = False
    exact: bool = False
    failure: Optional[FailureKind] = None
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.failure is None


def allocate_payload(
    model_id: str,
    max_tokens: int,
    reserved_response_tokens: int,
    system_prompt: str,
    fragments: Iterable[str] = (),
    content: Optional[str] = None,
    raw_document: Optional[bytes] = None,
    raw_content_type: Optional[str] = None,
    raw_mode: str = "text",
) -> PayloadAllocation:
    """Fit prompt, raw document and content into ``max_tokens``.

    ``content=None`` means content is not part of the request; ``raw_document``
    is only encoded when given. The result carries a failure instead of a
    payload when nothing useful fits.
    """
    counter = TokenCounter(model_id)
    prompt_tokens = count_prompt_tokens(counter, system_prompt, fragments)
    budget = compute_budget(max_tokens, reserved_response_tokens, prompt_tokens)
    allocation = PayloadAllocation(budget=budget, prompt_tokens=prompt_tokens, exact=counter.exact)

    if budget.exhausted:
        return allocation.model_copy(update={
            "failure": FailureKind.TOKEN_BUDGET_EXCEEDED,
            "reason": f"prompt needs {budget.reserved_tokens} of {max_tokens} tokens",
        })

    available = budget.available_tokens
    if raw_document is not None:
        payload, counted = encode_raw_document(raw_document, raw_content_type, raw_mode)
        raw_tokens = counter.count(counted)
        allocation = allocation.model_copy(update={"raw_payload": payload, "raw_tokens": raw_tokens})
        if content is None and raw_tokens > available:
            return allocation.model_copy(update={
                "failure": FailureKind.TOKEN_BUDGET_EXCEEDED,
                "reason": f"raw document needs {raw_tokens} tokens, {available} available",
            })
        available -= raw_tokens
        if content is not None and available <= 0:
            return allocation.model_copy(update={
                "failure": FailureKind.TOKEN_BUDGET_EXCEEDED,
                "reason": f"no tokens left for content after raw document ({raw_tokens} tokens)",
            })

    if content is None:
        return allocation

    text, truncated = counter.truncate(content, available)
    if truncated:
        logger.info(
            f"[budget] content truncated to {available} tokens "
            f"({len(content)} -> {len(text)} chars, exact={counter.exact})"
        )
    return allocation.model_copy(update={"content": text, "truncated": truncated})


__all__ = [
    "TokenCounter",
    "TokenBudget",
    "PayloadAllocation",
    "compute_budget",
    "count_prompt_tokens",
    "encode_raw_document",
    "allocate_payload",
    "has_exact_tokenizer",
]
