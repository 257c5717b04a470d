"""
Data models for the pattern store.

Stored records and results are plain dataclasses; the caller-facing
input records live in schemas.py.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import numpy as np

if TYPE_CHECKING:
    from .schemas import PatternOutcome, RecommendationContext, SkillFeatures


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OutcomeType(str, Enum):
    """What the user did with a recommendation."""

    ACCEPT = "accept"              # Accepted the recommendation
    USAGE = "usage"                # Actively uses the skill
    FREQUENT = "frequent"          # Uses the skill frequently
    DISMISS = "dismiss"            # Dismissed the recommendation
    ABANDONMENT = "abandonment"    # Installed but unused
    UNINSTALL = "uninstall"        # Removed the skill

    @property
    def reward(self) -> float:
        return PATTERN_REWARDS[self]

    @property
    def is_positive(self) -> bool:
        return self.reward > 0


# Signed reward per outcome, in [-1.0, 1.0]
PATTERN_REWARDS: Dict[OutcomeType, float] = {
    OutcomeType.ACCEPT: 1.0,
    OutcomeType.USAGE: 0.3,
    OutcomeType.FREQUENT: 0.5,
    OutcomeType.DISMISS: -0.5,
    OutcomeType.ABANDONMENT: -0.3,
    OutcomeType.UNINSTALL: -0.7,
}


def reward_weight(reward: float) -> float:
    """|reward|, with successes weighted 1.5x over failures."""
    weight = abs(reward)
    if reward > 0:
        weight *= 1.5
    return weight


@dataclass
class StoredPattern:
    """A persisted (context, skill, outcome) observation."""

    id: str
    context: "RecommendationContext"
    skill: "SkillFeatures"
    outcome: "PatternOutcome"
    context_embedding: np.ndarray
    original_score: float = 0.0
    source: str = "recommend"
    importance: float = 0.0
    access_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    last_accessed_at: datetime = field(default_factory=utcnow)

    @property
    def skill_id(self) -> str:
        return self.skill.skill_id

    @property
    def reward(self) -> float:
        return self.outcome.reward

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "context": self.context.model_dump(),
            "skill": self.skill.model_dump(),
            "outcome": {
                "type": self.outcome.type.value,
                "reward": self.outcome.reward,
            },
            "context_embedding": self.context_embedding.tolist(),
            "original_score": self.original_score,
            "source": self.source,
            "importance": self.importance,
            "access_count": self.access_count,
            "created_at": self.created_at.isoformat(),
            "last_accessed_at": self.last_accessed_at.isoformat(),
        }


@dataclass
class SimilarPattern:
    """A ranked match from find_similar_patterns."""

    pattern: StoredPattern
    similarity: float            # Plain cosine similarity
    weighted_similarity: float   # Fisher importance-weighted similarity
    rank: int


@dataclass
class ConsolidationResult:
    """Audit record of one consolidation run."""

    consolidated: bool
    patterns_processed: int = 0
    patterns_preserved: int = 0
    patterns_pruned: int = 0
    preservation_rate: float = 1.0    # Should stay >= 0.95
    duration_ms: int = 0
    average_importance: float = 0.0
    timestamp: Optional[datetime] = None
    # Patterns left above max_patterns because all were above the threshold
    over_capacity: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consolidated": self.consolidated,
            "patterns_processed": self.patterns_processed,
            "patterns_preserved": self.patterns_preserved,
            "patterns_pruned": self.patterns_pruned,
            "preservation_rate": self.preservation_rate,
            "duration_ms": self.duration_ms,
            "average_importance": self.average_importance,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "over_capacity": self.over_capacity,
        }


@dataclass
class ConsolidationState:
    """Inputs to the should-consolidate decision."""

    last_consolidation: Optional[datetime] = None
    patterns_since_last_consolidation: int = 0
    total_patterns: int = 0


@dataclass
class ConsolidationStats:
    total_consolidations: int = 0
    last_consolidation: Optional[datetime] = None
    average_preservation_rate: float = 0.0
    patterns_pruned: int = 0


@dataclass
class StorageStats:
    size_bytes: int = 0
    fisher_matrix_size_bytes: int = 0


@dataclass
class QueryStats:
    average_latency_ms: float = 0.0
    queries_performed: int = 0


@dataclass
class CapacityStats:
    max_patterns: int = 0
    over_capacity: bool = False
    excess_patterns: int = 0


@dataclass
class PatternStoreMetrics:
    """Read-only monitoring snapshot."""

    total_patterns: int = 0
    patterns_by_outcome: Dict[str, int] = field(default_factory=dict)
    average_importance: float = 0.0
    # Patterns at or above the 90th importance percentile
    high_importance_patterns: int = 0
    consolidation: ConsolidationStats = field(default_factory=ConsolidationStats)
    storage: StorageStats = field(default_factory=StorageStats)
    query_performance: QueryStats = field(default_factory=QueryStats)
    capacity: CapacityStats = field(default_factory=CapacityStats)
    recent_consolidations: List[ConsolidationResult] = field(default_factory=list)
