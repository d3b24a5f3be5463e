from typing import Any

from .json_utils import dumps


class TextUtils:
    """Utility class for text processing operations."""

    @staticmethod
    def truncate_text(text: Any, limit: int) -> str:
        """Truncate text to specified limit with indicator."""
        try:
            s = text if isinstance(text, str) else dumps(text)
        except TypeError:
            s = str(text)
        if limit <= 0 or len(s) <= limit:
            return s
        tail = len(s) - limit
        return f"{s[:limit]}... [truncated {tail} chars]"

    @staticmethod
    def cap_length(text: str, limit: int, keep: int, ellipsis: str = "…") -> str:
        """Shorten text longer than ``limit`` to its first ``keep`` chars plus ``ellipsis``."""
        if len(text) <= limit:
            return text
        return text[:keep] + ellipsis

    @staticmethod
    def normalize_name(name: Any) -> str:
        return str(name or "").strip().lower()
