"""Connector modules for the document store and the LLM provider."""

from .llm_connector import LLMConnector
from .paperless_connector import PaperlessConnector

__all__ = [
    'LLMConnector',
    'PaperlessConnector'
]
