"""
Similarity ranking - plain and Fisher importance-weighted cosine.

Pure functions, no I/O. Zero-norm vectors score 0 rather than
dividing by zero.
"""

from typing import List, Optional, Sequence

import numpy as np

from .models import SimilarPattern, StoredPattern


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)

    norm_a = float(np.dot(a, a))
    norm_b = float(np.dot(b, b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a, b) / (np.sqrt(norm_a) * np.sqrt(norm_b)))


def importance_weighted_similarity(
    a: np.ndarray,
    b: np.ndarray,
    importance: np.ndarray,
) -> float:
    """
    Cosine similarity with each dimension weighted by 1 + importance.

    Agreement on historically load-bearing dimensions counts for more.
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    weight = 1.0 + np.asarray(importance, dtype=np.float64)

    norm_a = float(np.dot(weight * a, a))
    norm_b = float(np.dot(weight * b, b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(weight * a, b) / (np.sqrt(norm_a) * np.sqrt(norm_b)))


def best_match(
    query: np.ndarray,
    candidates: Sequence[StoredPattern],
) -> Optional[SimilarPattern]:
    """Candidate with the highest plain cosine similarity, or None."""
    best = None
    for pattern in candidates:
        score = cosine_similarity(query, pattern.context_embedding)
        if best is None or score > best.similarity:
            best = SimilarPattern(
                pattern=pattern,
                similarity=score,
                weighted_similarity=score,
                rank=1,
            )
    return best


def rank_candidates(
    query: np.ndarray,
    candidates: Sequence[StoredPattern],
    importance: np.ndarray,
    limit: Optional[int] = None,
) -> List[SimilarPattern]:
    """
    Score candidates and order them by weighted similarity.

    Args:
        query: Query embedding
        candidates: Patterns that passed the storage filters
        importance: Snapshot of the Fisher importance vector
        limit: Maximum results (None = all)

    Returns:
        SimilarPattern list, best first, ranks 1..N
    """
    if not candidates:
        return []

    q = np.asarray(query, dtype=np.float64)
    weight = 1.0 + np.asarray(importance, dtype=np.float64)
    matrix = np.vstack([p.context_embedding for p in candidates]).astype(np.float64)

    dots = matrix @ q
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
    similarity = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

    weighted_dots = matrix @ (weight * q)
    weighted_norms = np.sqrt((matrix * matrix) @ weight) * np.sqrt(np.dot(weight * q, q))
    weighted = np.divide(
        weighted_dots,
        weighted_norms,
        out=np.zeros_like(weighted_dots),
        where=weighted_norms > 0,
    )

    # Stable sort keeps storage order among ties
    order = np.argsort(-weighted, kind="stable")
    if limit is not None:
        order = order[:limit]

    return [
        SimilarPattern(
            pattern=candidates[idx],
            similarity=float(similarity[idx]),
            weighted_similarity=float(weighted[idx]),
            rank=rank,
        )
        for rank, idx in enumerate(order, start=1)
    ]
