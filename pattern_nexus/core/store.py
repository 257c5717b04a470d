"""
Pattern Store - the main interface to Pattern Nexus.

Records the outcomes of past recommendations as patterns and serves
similarity queries against them. EWC++ consolidation keeps historically
important patterns from being forgotten as new ones arrive.

The store owns its Fisher matrix, the running mean embedding and the
new-since-last-consolidation counter. Every mutation of that state goes
through one write lock; readers rank against a copy of the importance
vector.
"""

import logging
import threading
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

import numpy as np
import pydantic

from ..embeddings import PatternEncoder, compute_gradient, create_embeddings
from .config import PatternStoreConfig
from .consolidation import CAPACITY_TRIGGER_RATIO, ConsolidationEngine
from .errors import (
    PatternStoreError,
    PatternValidationError,
    PersistenceError,
    StoreClosedError,
)
from .fisher import FisherInformationMatrix
from .models import (
    CapacityStats,
    ConsolidationResult,
    ConsolidationState,
    ConsolidationStats,
    OutcomeType,
    PatternStoreMetrics,
    QueryStats,
    SimilarPattern,
    StorageStats,
    StoredPattern,
    reward_weight,
    utcnow,
)
from .repository import PatternRepository, create_pattern_repository
from .schemas import Pattern, PatternOutcome, PatternQuery
from .similarity import best_match, rank_candidates

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=pydantic.BaseModel)


def _coerce(model_cls: Type[ModelT], value: Any) -> ModelT:
    """Validate caller input into a schema model."""
    if isinstance(value, model_cls):
        return value
    try:
        return model_cls.model_validate(value)
    except pydantic.ValidationError as e:
        raise PatternValidationError(f"Invalid {model_cls.__name__}: {e}") from e


class PatternStore:
    """
    Pattern storage with EWC++ consolidation.

    Example:
        store = PatternStore()  # In-memory, hash embeddings

        # Record what happened to a recommendation
        pattern_id = store.store_pattern(
            {"context": {"frameworks": ["react"], "keywords": ["testing"]},
             "skill": {"skill_id": "community/jest-helper", "category": "testing"}},
            {"type": "accept"},
        )

        # Find past patterns for a similar context
        matches = store.find_similar_patterns(
            {"context": {"frameworks": ["react"]}, "positive_only": True}
        )

        # Decay, re-estimate and prune
        result = store.consolidate()

        store.close()
    """

    def __init__(
        self,
        config: Optional[PatternStoreConfig] = None,
        embeddings: Any = None,
        repository: Optional[PatternRepository] = None,
    ):
        """
        Initialize Pattern Store.

        Args:
            config: Store configuration (defaults to PatternStoreConfig())
            embeddings: Embedding provider or text -> vector callable;
                created from config.embedding_provider when omitted
            repository: Pattern storage; SQLite at config.db_path when omitted
        """
        self.config = config or PatternStoreConfig()
        errors = self.config.validate()
        if errors:
            raise PatternValidationError(f"Invalid pattern store config: {'; '.join(errors)}")

        dimensions = self.config.dimensions

        if embeddings is None:
            embeddings = create_embeddings(
                self.config.embedding_provider,
                dimension=dimensions,
                model_name=self.config.embedding_model,
            )
        self.encoder = PatternEncoder(embeddings, dimensions)

        self.repository = repository or create_pattern_repository(
            "sqlite",
            dimensions=dimensions,
            db_path=self.config.db_path,
        )

        self.fisher = FisherInformationMatrix(dimensions)
        self._load_fisher_state()

        self.engine = ConsolidationEngine(
            self.repository,
            self.fisher,
            self.config.ewc,
            rng=np.random.default_rng(self.config.random_seed),
        )

        # Single-writer state
        self._write_lock = threading.RLock()
        self._consolidating = threading.Lock()
        self._deferred: Optional[threading.Thread] = None

        summary = self.repository.consolidation_summary()
        self._last_consolidation: Optional[datetime] = summary["last_consolidation"]
        if self._last_consolidation is not None:
            self._patterns_since_consolidation = self.repository.count_created_since(
                self._last_consolidation
            )
        else:
            self._patterns_since_consolidation = self.repository.count()
        self._mean_embedding = self.repository.mean_embedding()

        # Query performance
        self._stats_lock = threading.Lock()
        self._queries_performed = 0
        self._query_time_ms = 0.0

        self._closed = False

        logger.info(
            f"PatternStore initialized: db={self.config.db_path or ':memory:'}, "
            f"dim={dimensions}, patterns={self.repository.count()}, "
            f"consolidation={self.config.consolidation_mode}"
        )

    def _load_fisher_state(self) -> None:
        state = self.repository.load_fisher_state()
        if state is None:
            return
        if state.dimensions != self.fisher.dimensions:
            raise PatternValidationError(
                f"Stored Fisher state has {state.dimensions} dims, store configured for "
                f"{self.fisher.dimensions}; re-encode the store to change dimensions"
            )
        self.fisher.deserialize(state.matrix_data)
        logger.debug(f"Loaded Fisher state ({self.fisher.update_count} updates)")

    # =========================================================================
    # Write path
    # =========================================================================

    def store_pattern(
        self,
        pattern: Union[Pattern, Dict[str, Any]],
        outcome: Union[PatternOutcome, Dict[str, Any], OutcomeType, str],
    ) -> str:
        """
        Record a recommendation and its outcome.

        A pattern of the same skill whose context embedding is nearly
        identical (cosine > merge_similarity) is reinforced instead of
        duplicated.

        Args:
            pattern: The recommendation (context, skill, score, source)
            outcome: What the user did; a bare outcome type is accepted

        Returns:
            ID of the new or reinforced pattern
        """
        self._check_open()
        pattern = _coerce(Pattern, pattern)
        if isinstance(outcome, (str, OutcomeType)):
            outcome = {"type": outcome}
        outcome = _coerce(PatternOutcome, outcome)

        embedding = self.encoder.encode(pattern.context)
        now = utcnow()

        with self._write_lock:
            fisher_snapshot = self.fisher.copy()
            mean_snapshot = self._mean_embedding.copy()
            try:
                with self.repository.transaction():
                    pattern_id = self._merge_or_insert(pattern, outcome, embedding, now)
            except Exception:
                self.fisher.restore(fisher_snapshot)
                self._mean_embedding = mean_snapshot
                raise

            self._patterns_since_consolidation += 1
            due = self._consolidation_due()

        if due:
            self._trigger_consolidation()

        return pattern_id

    def _merge_or_insert(
        self,
        pattern: Pattern,
        outcome: PatternOutcome,
        embedding: np.ndarray,
        now: datetime,
    ) -> str:
        ewc = self.config.ewc
        importance = reward_weight(outcome.reward) * outcome.weight * ewc.initial_importance_scale

        candidates = self.repository.scan(PatternQuery(skill_id=pattern.skill.skill_id))
        match = best_match(embedding, candidates)

        if match is not None and match.similarity > ewc.merge_similarity:
            existing = match.pattern
            self.fisher.update(compute_gradient(embedding, existing.context_embedding))
            self.repository.reinforce(existing.id, importance, now)
            logger.debug(
                f"Reinforced pattern {existing.id} "
                f"(similarity={match.similarity:.3f}, outcome={outcome.type.value})"
            )
            return existing.id

        if pattern.id and self.repository.exists(pattern.id):
            raise PatternValidationError(f"Pattern id already exists: {pattern.id}")

        stored = StoredPattern(
            id=pattern.id or uuid.uuid4().hex,
            context=pattern.context,
            skill=pattern.skill,
            outcome=outcome,
            context_embedding=embedding,
            original_score=pattern.original_score,
            source=pattern.source,
            importance=importance,
            access_count=0,
            created_at=now,
            last_accessed_at=now,
        )
        self.repository.insert(stored)

        # Sensitivity of the space to this new direction
        self.fisher.update(compute_gradient(embedding, self._mean_embedding))
        total = self.repository.count()
        self._mean_embedding = self._mean_embedding + (embedding - self._mean_embedding) / total

        logger.debug(
            f"Stored pattern {stored.id} for {stored.skill_id} "
            f"(outcome={outcome.type.value}, importance={importance:.4f})"
        )
        return stored.id

    def _consolidation_due(self) -> bool:
        if not self.config.auto_consolidate:
            return False
        total = self.repository.count()
        if total == 0:
            return False
        ewc = self.config.ewc
        return (
            self._patterns_since_consolidation / total > ewc.consolidation_threshold
            or total > ewc.max_patterns * CAPACITY_TRIGGER_RATIO
        )

    def _trigger_consolidation(self) -> None:
        if self.config.consolidation_mode == "sync":
            # The pattern is already committed; a failed run must not fail the store
            try:
                self.consolidate()
            except PatternStoreError as e:
                logger.warning(f"Consolidation after store failed, pattern kept: {e}")
            return

        with self._write_lock:
            if self._deferred is not None and self._deferred.is_alive():
                return
            self._deferred = threading.Thread(
                target=self._run_deferred,
                name="pattern-consolidation",
                daemon=True,
            )
            self._deferred.start()

    def _run_deferred(self) -> None:
        try:
            self.consolidate()
        except StoreClosedError:
            logger.debug("Store closed before deferred consolidation ran")
        except Exception:
            logger.exception("Deferred consolidation failed")

    # =========================================================================
    # Read path
    # =========================================================================

    def find_similar_patterns(
        self,
        query: Union[PatternQuery, Dict[str, Any]],
        limit: int = 10,
    ) -> List[SimilarPattern]:
        """
        Find stored patterns similar to a context.

        Args:
            query: Context plus optional filters (skill_id, category,
                min_importance, outcome_type, positive_only)
            limit: Maximum results

        Returns:
            Matches ordered by importance-weighted similarity, ranked from 1.
            Empty when nothing passes the filters.
        """
        self._check_open()
        query = _coerce(PatternQuery, query)
        if limit < 1:
            raise PatternValidationError(f"limit must be >= 1, got {limit}")

        started = time.perf_counter()
        embedding = self.encoder.encode(query.context)
        candidates = self.repository.scan(query)
        results = rank_candidates(
            embedding,
            candidates,
            self.fisher.get_importance_vector(),
            limit=limit,
        )

        if results and self.config.track_access:
            self._record_access(results)

        elapsed_ms = (time.perf_counter() - started) * 1000
        with self._stats_lock:
            self._queries_performed += 1
            self._query_time_ms += elapsed_ms

        return results

    def _record_access(self, results: List[SimilarPattern]) -> None:
        """Best effort: a failed stats update never fails the read."""
        now = utcnow()
        boost = self.config.ewc.access_importance_boost
        try:
            self.repository.record_access(
                [r.pattern.id for r in results],
                now,
                importance_boost=boost,
            )
        except PersistenceError as e:
            logger.warning(f"Access stats not updated for {len(results)} patterns: {e}")
            return

        for r in results:
            r.pattern.access_count += 1
            r.pattern.last_accessed_at = now
            r.pattern.importance *= 1.0 + boost

    def get_pattern(self, pattern_id: str) -> Optional[StoredPattern]:
        """Get a pattern by ID without touching its access stats."""
        self._check_open()
        return self.repository.get(pattern_id)

    def get_pattern_importance(self, pattern_id: str) -> Optional[float]:
        """Importance of a pattern, or None if it does not exist."""
        self._check_open()
        return self.repository.get_importance(pattern_id)

    # =========================================================================
    # Consolidation
    # =========================================================================

    def consolidate(self, force: bool = False) -> ConsolidationResult:
        """
        Run EWC++ consolidation if it is due.

        Args:
            force: Run even if the should-consolidate check says no

        Returns:
            ConsolidationResult; consolidated=False when nothing ran
            (not due, or another consolidation is in flight)
        """
        self._check_open()
        if not self._consolidating.acquire(blocking=False):
            logger.info("Consolidation already in progress, skipping")
            return ConsolidationResult(consolidated=False, timestamp=utcnow())

        try:
            with self._write_lock:
                state = ConsolidationState(
                    last_consolidation=self._last_consolidation,
                    patterns_since_last_consolidation=self._patterns_since_consolidation,
                    total_patterns=self.repository.count(),
                )
                result, mean = self.engine.consolidate(state, force=force)
                if result.consolidated:
                    self._mean_embedding = mean
                    self._patterns_since_consolidation = 0
                    self._last_consolidation = result.timestamp
            return result
        finally:
            self._consolidating.release()

    # =========================================================================
    # Monitoring
    # =========================================================================

    def get_metrics(self) -> PatternStoreMetrics:
        """Monitoring snapshot. Does not touch access stats."""
        self._check_open()
        importances = self.repository.importances()
        total = len(importances)

        high = 0
        if total:
            p90 = float(np.percentile(importances, 90))
            high = int(np.count_nonzero(importances >= p90))

        summary = self.repository.consolidation_summary()
        max_patterns = self.config.ewc.max_patterns
        excess = max(0, total - max_patterns)

        with self._stats_lock:
            queries = self._queries_performed
            avg_latency = self._query_time_ms / queries if queries else 0.0

        return PatternStoreMetrics(
            total_patterns=total,
            patterns_by_outcome=self.repository.count_by_outcome(),
            average_importance=float(importances.mean()) if total else 0.0,
            high_importance_patterns=high,
            consolidation=ConsolidationStats(**summary),
            storage=StorageStats(
                size_bytes=self.repository.size_bytes(),
                fisher_matrix_size_bytes=self.fisher.size_bytes,
            ),
            query_performance=QueryStats(
                average_latency_ms=avg_latency,
                queries_performed=queries,
            ),
            capacity=CapacityStats(
                max_patterns=max_patterns,
                over_capacity=excess > 0,
                excess_patterns=excess,
            ),
            recent_consolidations=self.repository.consolidation_history(limit=5),
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def checkpoint(self) -> None:
        """Persist the Fisher state."""
        self._check_open()
        with self._write_lock:
            self.repository.save_fisher_state(self.fisher.serialize(), self.fisher.update_count)

    def close(self) -> None:
        """Wait for deferred consolidation, persist Fisher state, close storage."""
        if self._closed:
            return
        if self._deferred is not None:
            self._deferred.join()
        try:
            self.checkpoint()
        finally:
            self._closed = True
            self.repository.close()
        logger.info("PatternStore closed")

    def _check_open(self) -> None:
        if self._closed:
            raise StoreClosedError("PatternStore is closed")

    def __enter__(self) -> "PatternStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def create_pattern_store(
    config: Optional[PatternStoreConfig] = None,
    embeddings: Any = None,
    **overrides: Any,
) -> PatternStore:
    """
    Factory function to create a pattern store.

    Args:
        config: Base configuration (defaults to PatternStoreConfig())
        embeddings: Optional embedding provider
        **overrides: Config fields to override; "ewc" takes a dict of
            EWC parameters merged over the base ones

    Returns:
        PatternStore instance
    """
    config = config or PatternStoreConfig()
    if overrides:
        config = config.with_overrides(**overrides)
    return PatternStore(config, embeddings=embeddings)
