"""
Pattern encoder - adapts an embedding provider to the pattern store.

Turns a RecommendationContext into a fixed-length float32 vector and
computes the embedding differences fed to the Fisher estimate.
"""

import logging
from typing import Any, Callable, List, Union

import numpy as np

from ..core.errors import EncoderError, PatternValidationError
from ..core.schemas import RecommendationContext

logger = logging.getLogger(__name__)

EmbedFn = Callable[[str], List[float]]


def context_to_text(context: RecommendationContext) -> str:
    """Render a recommendation context as text for embedding."""
    parts = []

    if context.installed_skills:
        parts.append(f"installed: {', '.join(context.installed_skills)}")
    if context.frameworks:
        parts.append(f"frameworks: {', '.join(context.frameworks)}")
    if context.keywords:
        parts.append(f"keywords: {', '.join(context.keywords)}")
    if context.time_of_day:
        parts.append(f"time: {context.time_of_day}")
    if context.day_type:
        parts.append(f"day: {context.day_type}")

    return " | ".join(parts) or "empty context"


def compute_gradient(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Element-wise a - b, the observed change between two embeddings."""
    return np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)


class PatternEncoder:
    """
    Wraps an embedding provider.

    The provider is anything with embed(text) (SimpleEmbeddings,
    LocalEmbeddings) or a plain callable text -> vector. Provider
    failures surface as EncoderError with the original exception
    chained; vectors of the wrong length are rejected.
    """

    def __init__(self, provider: Union[Any, EmbedFn], dimensions: int = 384):
        embed = getattr(provider, "embed", None)
        if callable(embed):
            self._embed = embed
        elif callable(provider):
            self._embed = provider
        else:
            raise TypeError("provider must have embed(text) or be callable")

        self.provider = provider
        self.dimensions = dimensions

        provider_dim = getattr(provider, "dimension", None)
        if isinstance(provider_dim, int) and provider_dim != dimensions:
            raise PatternValidationError(
                f"Embedding provider produces {provider_dim} dims, store expects {dimensions}"
            )

    def encode(self, context: RecommendationContext) -> np.ndarray:
        return self.encode_text(context_to_text(context))

    def encode_text(self, text: str) -> np.ndarray:
        try:
            raw = self._embed(text)
        except Exception as e:
            raise EncoderError(f"Embedding failed: {e}") from e

        vector = np.asarray(raw, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.dimensions:
            raise PatternValidationError(
                f"Embedding has {vector.shape[0]} dims, expected {self.dimensions}"
            )
        if not np.all(np.isfinite(vector)):
            raise PatternValidationError("Embedding contains non-finite values")

        logger.debug(f"Encoded context ({len(text)} chars)")
        return vector
