"""Utility modules for JSON extraction from model output and text handling."""

from .json_utils import dumps, extract_first_json, safe_loads
from .text_utils import TextUtils

__all__ = ["TextUtils", "dumps", "extract_first_json", "safe_loads"]
