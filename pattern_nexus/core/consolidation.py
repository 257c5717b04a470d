"""
EWC++ consolidation - decay, re-estimate, rescore, prune.

A run:
1. Decays the Fisher running sum so newly relevant dimensions can rise
2. Resamples stored patterns to refresh the Fisher estimate against the
   current contents rather than the insertion-time snapshot
3. Rescores every pattern from its outcome, age, access history and the
   Fisher importance of the region it lives in
4. Prunes low-importance patterns (capacity is a soft target, patterns
   above the importance threshold are never pruned for space)
5. Persists the Fisher state and an audit record in the same transaction
   as the row changes
"""

import logging
import math
import time
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .config import EWCConfig
from .fisher import FisherInformationMatrix
from .models import ConsolidationResult, ConsolidationState, reward_weight, utcnow
from .repository import PatternRepository, ScoringRow

logger = logging.getLogger(__name__)

RECENCY_HALF_LIFE_DAYS = 30.0

# Consolidate before the hard cap is reached
CAPACITY_TRIGGER_RATIO = 0.9


def should_consolidate(
    state: ConsolidationState,
    config: EWCConfig,
    now: Optional[datetime] = None,
) -> bool:
    """Whether a consolidation run is due."""
    now = now or utcnow()

    if state.last_consolidation is not None:
        elapsed = (now - state.last_consolidation).total_seconds()
        if elapsed < config.min_consolidation_interval:
            return False

    if state.total_patterns <= 0:
        return False

    new_ratio = state.patterns_since_last_consolidation / state.total_patterns
    if new_ratio >= config.consolidation_threshold:
        return True

    if state.total_patterns >= config.max_patterns * CAPACITY_TRIGGER_RATIO:
        return True

    return False


def recency_factor(created_at: datetime, now: datetime) -> float:
    age_days = max(0.0, (now - created_at).total_seconds() / 86400.0)
    return 0.5 ** (age_days / RECENCY_HALF_LIFE_DAYS)


def access_factor(access_count: int) -> float:
    return 1.0 + math.log1p(max(0, access_count))


def dimension_importance(embedding: np.ndarray, importance_vector: np.ndarray) -> float:
    """Mean of importance[i] * |embedding[i]|."""
    emb = np.abs(np.asarray(embedding, dtype=np.float64))
    return float(np.mean(importance_vector * emb))


def calculate_pattern_importance(
    reward: float,
    created_at: datetime,
    access_count: int,
    embedding: np.ndarray,
    importance_vector: np.ndarray,
    lambda_: float,
    now: datetime,
) -> float:
    """
    Scalar importance of one pattern.

    reward weight x recency (30-day half-life) x (1 + ln(1 + accesses))
    x Fisher region factor. The Fisher term is lambda-regularized:
    higher lambda means stronger preservation of patterns that live in
    load-bearing dimensions.
    """
    fisher_factor = 1.0 + lambda_ * dimension_importance(embedding, importance_vector) / 10.0
    return (
        reward_weight(reward)
        * recency_factor(created_at, now)
        * access_factor(access_count)
        * fisher_factor
    )


def select_prunable(
    scored: Sequence[Tuple[str, float]],
    max_patterns: int,
    importance_threshold: float,
) -> List[str]:
    """
    Pattern ids to delete, lowest importance first.

    Over capacity: drop patterns below the threshold until at capacity.
    Always: drop noise below a tenth of the threshold.
    """
    noise_floor = importance_threshold / 10.0
    excess = len(scored) - max_patterns
    prune = []

    for pattern_id, score in sorted(scored, key=lambda s: (s[1], s[0])):
        if excess > 0 and score < importance_threshold:
            prune.append(pattern_id)
            excess -= 1
        elif score < noise_floor:
            prune.append(pattern_id)

    return prune


class ConsolidationEngine:
    """
    Runs consolidation against a repository and a Fisher matrix.

    Either the whole run commits or nothing changes: row updates,
    deletions, the Fisher state and the audit record share one
    transaction, and the in-memory Fisher matrix is restored if the
    transaction fails.
    """

    def __init__(
        self,
        repository: PatternRepository,
        fisher: FisherInformationMatrix,
        config: EWCConfig,
        rng: Optional[np.random.Generator] = None,
    ):
        self.repository = repository
        self.fisher = fisher
        self.config = config
        self.rng = rng or np.random.default_rng()

    def consolidate(
        self,
        state: ConsolidationState,
        now: Optional[datetime] = None,
        force: bool = False,
    ) -> Tuple[ConsolidationResult, Optional[np.ndarray]]:
        """
        Run one consolidation.

        Args:
            state: Current consolidation state
            now: Clock override
            force: Skip the should-consolidate check

        Returns:
            (result, mean embedding of the surviving patterns). The mean is
            None when nothing ran.
        """
        now = now or utcnow()
        if not force and not should_consolidate(state, self.config, now):
            logger.debug("Consolidation not due")
            return ConsolidationResult(consolidated=False, timestamp=now), None

        started = time.perf_counter()
        snapshot = self.fisher.copy()

        try:
            with self.repository.transaction():
                self.fisher.decay(self.config.fisher_decay)
                self._refresh_fisher()

                importance_vector = self.fisher.get_importance_vector()
                rows = list(self.repository.iter_scoring_rows())
                scored = [
                    (row.pattern_id, self._score(row, importance_vector, now))
                    for row in rows
                ]
                self.repository.update_importances(scored)

                prune_ids = select_prunable(
                    scored,
                    self.config.max_patterns,
                    self.config.importance_threshold,
                )
                pruned = self.repository.delete_many(prune_ids)

                result, mean = self._summarize(rows, scored, set(prune_ids), pruned, now)
                result.duration_ms = int((time.perf_counter() - started) * 1000)

                self.repository.save_fisher_state(
                    self.fisher.serialize(),
                    self.fisher.update_count,
                    last_decay_at=now,
                )
                self.repository.append_consolidation(result)
        except Exception:
            self.fisher.restore(snapshot)
            logger.warning("Consolidation failed, Fisher state restored")
            raise

        if result.preservation_rate < 0.95:
            logger.warning(
                f"Consolidation preserved only {result.preservation_rate:.1%} of patterns "
                f"({result.patterns_pruned} pruned)"
            )
        if result.over_capacity:
            logger.warning(
                f"{result.over_capacity} patterns over max_patterns="
                f"{self.config.max_patterns}, all above importance threshold"
            )

        logger.info(
            f"Consolidated {result.patterns_processed} patterns: "
            f"{result.patterns_preserved} preserved, {result.patterns_pruned} pruned "
            f"in {result.duration_ms}ms"
        )
        return result, mean

    def _refresh_fisher(self) -> None:
        """Re-estimate the Fisher diagonal from a sample of current patterns."""
        ids = self.repository.list_ids()
        sample_size = min(self.config.fisher_sample_size, len(ids))
        if sample_size == 0:
            return

        mean = self.repository.mean_embedding()
        chosen = self.rng.choice(len(ids), size=sample_size, replace=False)
        for embedding in self.repository.get_embeddings([ids[i] for i in chosen]):
            self.fisher.update(embedding - mean)

    def _score(self, row: ScoringRow, importance_vector: np.ndarray, now: datetime) -> float:
        return calculate_pattern_importance(
            reward=row.reward,
            created_at=row.created_at,
            access_count=row.access_count,
            embedding=row.embedding,
            importance_vector=importance_vector,
            lambda_=self.config.lambda_,
            now=now,
        )

    def _summarize(
        self,
        rows: Sequence[ScoringRow],
        scored: Sequence[Tuple[str, float]],
        prune_ids: set,
        pruned: int,
        now: datetime,
    ) -> Tuple[ConsolidationResult, np.ndarray]:
        kept_scores = [score for pid, score in scored if pid not in prune_ids]
        kept_embeddings = [row.embedding for row in rows if row.pattern_id not in prune_ids]

        preserved = len(kept_scores)
        evaluated = preserved + pruned
        if kept_embeddings:
            mean = np.mean(np.vstack(kept_embeddings).astype(np.float64), axis=0)
        else:
            mean = np.zeros(self.fisher.dimensions, dtype=np.float64)

        result = ConsolidationResult(
            consolidated=True,
            patterns_processed=len(rows),
            patterns_preserved=preserved,
            patterns_pruned=pruned,
            preservation_rate=preserved / evaluated if evaluated else 1.0,
            average_importance=float(np.mean(kept_scores)) if kept_scores else 0.0,
            timestamp=now,
            over_capacity=max(0, preserved - self.config.max_patterns),
        )
        return result, mean
