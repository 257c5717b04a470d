# tests/conftest.py
"""
Shared pytest fixtures for pattern_nexus tests.

Stores run in memory on small (64-dim) hash embeddings so tests stay
fast and deterministic.
"""

import logging
from typing import Any, Dict, Iterable, Optional

import numpy as np
import pytest

from pattern_nexus import (
    PatternOutcome,
    PatternStore,
    PatternStoreConfig,
    RecommendationContext,
    SkillFeatures,
    SQLitePatternRepository,
    StoredPattern,
)
from pattern_nexus.core.models import utcnow

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logging.getLogger("pattern_nexus").setLevel(logging.DEBUG)

DIM = 64


@pytest.fixture
def dim() -> int:
    return DIM


@pytest.fixture
def config() -> PatternStoreConfig:
    """Manual consolidation, seeded sampling."""
    return PatternStoreConfig(dimensions=DIM, auto_consolidate=False, random_seed=7)


@pytest.fixture
def store(config):
    s = PatternStore(config)
    yield s
    s.close()


@pytest.fixture
def repository():
    repo = SQLitePatternRepository(None, dimensions=4)
    yield repo
    repo.close()


@pytest.fixture
def make_pattern():
    """Factory for store_pattern input dicts."""

    def _make(
        skill_id: str = "community/jest-helper",
        frameworks: Iterable[str] = ("react",),
        keywords: Iterable[str] = ("testing",),
        category: Optional[str] = "testing",
        **kwargs: Any,
    ) -> Dict[str, Any]:
        data = {
            "context": {"frameworks": list(frameworks), "keywords": list(keywords)},
            "skill": {"skill_id": skill_id, "category": category},
        }
        data.update(kwargs)
        return data

    return _make


@pytest.fixture
def make_stored():
    """Factory for StoredPattern rows written straight to a repository."""

    def _make(
        pattern_id: str,
        embedding,
        skill_id: str = "community/jest-helper",
        outcome: str = "accept",
        category: Optional[str] = "testing",
        importance: float = 0.1,
        created_at=None,
    ) -> StoredPattern:
        now = created_at or utcnow()
        return StoredPattern(
            id=pattern_id,
            context=RecommendationContext(frameworks=["react"]),
            skill=SkillFeatures(skill_id=skill_id, category=category),
            outcome=PatternOutcome(type=outcome),
            context_embedding=np.asarray(embedding, dtype=np.float32),
            importance=importance,
            created_at=now,
            last_accessed_at=now,
        )

    return _make
