"""Primary source package for the Paperless metadata enricher.

Tests import modules as 'enricher.src.processing.token_budget' and so on.
All intra-package imports use the relative form (e.g. 'from ..config import Settings').
"""

__all__ = []
