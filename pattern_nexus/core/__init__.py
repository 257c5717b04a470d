"""
Pattern Nexus - Core Storage Layer

EWC++ pattern store:
- Fisher: Diagonal importance estimate over embedding dimensions
- Repository: Durable pattern storage (SQLite)
- Consolidation: Decay, re-estimate, rescore and prune
- Store: The facade tying them together
"""

from .config import EWCConfig, PatternStoreConfig
from .consolidation import ConsolidationEngine, calculate_pattern_importance, should_consolidate
from .errors import (
    EncoderError,
    PatternStoreError,
    PatternValidationError,
    PersistenceError,
    StoreClosedError,
)
from .fisher import FisherInformationMatrix
from .models import (
    ConsolidationResult,
    OutcomeType,
    PATTERN_REWARDS,
    PatternStoreMetrics,
    SimilarPattern,
    StoredPattern,
)
from .repository import PatternRepository, SQLitePatternRepository, create_pattern_repository
from .schemas import Pattern, PatternOutcome, PatternQuery, RecommendationContext, SkillFeatures
from .similarity import cosine_similarity, importance_weighted_similarity
from .store import PatternStore, create_pattern_store

__all__ = [
    "PatternStore",
    "create_pattern_store",
    "PatternStoreConfig",
    "EWCConfig",
    "FisherInformationMatrix",
    "ConsolidationEngine",
    "should_consolidate",
    "calculate_pattern_importance",
    "PatternRepository",
    "SQLitePatternRepository",
    "create_pattern_repository",
    "cosine_similarity",
    "importance_weighted_similarity",
    "Pattern",
    "PatternOutcome",
    "PatternQuery",
    "RecommendationContext",
    "SkillFeatures",
    "OutcomeType",
    "PATTERN_REWARDS",
    "StoredPattern",
    "SimilarPattern",
    "ConsolidationResult",
    "PatternStoreMetrics",
    "PatternStoreError",
    "PatternValidationError",
    "EncoderError",
    "PersistenceError",
    "StoreClosedError",
]
