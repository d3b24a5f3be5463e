"""JSON extraction utilities for model output, using orjson.

- safe_loads: parse str/bytes with orjson.
- extract_first_json: locate the first plausible JSON object in text that may
  wrap it in ``<json>`` tags, code fences or surrounding prose, and parse it.
"""

from __future__ import annotations

import re
from typing import Any, Optional

import orjson

_JSON_BLOCK_RE = re.compile(r"```[a-zA-Z0-9]*\s*\n(.*?)```", re.DOTALL)
_JSON_TAG_RE = re.compile(r"<json>(.*?)</json>", re.DOTALL | re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def safe_loads(data: str | bytes) -> Any:
    """Parse JSON; raises ``orjson.JSONDecodeError`` (a ``ValueError``)."""
    return orjson.loads(data)


def dumps(data: Any) -> str:
    return orjson.dumps(data).decode("utf-8")


def _strip_code_fences(text: str) -> str:
    blocks = _JSON_BLOCK_RE.findall(text)
    if blocks:
        for blk in blocks:
            s = blk.strip()
            if s.startswith("{") or s.startswith("["):
                return s
        return blocks[0].strip()
    return text


def _normalize_quotes(text: str) -> str:
    return text.replace("“", '"').replace("”", '"').replace("‘", "'").replace("’", "'")


def strip_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def find_json_substring(text: str) -> Optional[str]:
    """Find first balanced JSON object or array substring.

    Single pass with a stack, aware of strings and escapes.
    """
    stack: list[str] = []
    in_string = False
    escaped = False
    start_index: Optional[int] = None

    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"' and stack:
            in_string = True
            continue
        if ch in "[{":
            if not stack:
                start_index = i
            stack.append(ch)
            continue
        if ch in "]}" and stack:
            stack.pop()
            if not stack and start_index is not None:
                return text[start_index : i + 1]
    return None


def extract_first_json(text: str) -> Optional[Any]:
    """Extract and parse the first JSON object/array from model output.

    Steps:
      1. Normalize smart quotes.
      2. Prefer a ``<json>...</json>`` block, then a fenced code block.
      3. Direct parse if the candidate starts with { or [.
      4. Fallback: scan for the first balanced substring.
      5. Each candidate is retried once with trailing commas removed.

    Returns parsed object or None if not found/parse error.
    """
    if not text:
        return None
    text = _normalize_quotes(text)
    if tagged := _JSON_TAG_RE.search(text):
        text = tagged.group(1)
    stripped = _strip_code_fences(text).strip()
    candidates = []
    if stripped.startswith("{") or stripped.startswith("["):
        candidates.append(stripped)
    if sub := find_json_substring(stripped):
        candidates.append(sub)
    for cand in candidates:
        for attempt in (cand, strip_trailing_commas(cand)):
            try:
                return safe_loads(attempt)
            except ValueError:
                continue
    return None


__all__ = ["safe_loads", "dumps", "extract_first_json", "find_json_substring", "strip_trailing_commas"]
