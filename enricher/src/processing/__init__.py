"""Processing modules: token budgeting, entity reconciliation, analysis and the document pipeline."""

from .analyzer import DocumentAnalyzer
from .document_processor import DocumentProcessor
from .entity_cache import CatalogCaches, EntityCache, RestrictionPolicy
from .state_manager import StateManager

__all__ = [
    'DocumentAnalyzer',
    'DocumentProcessor',
    'CatalogCaches',
    'EntityCache',
    'RestrictionPolicy',
    'StateManager'
]
