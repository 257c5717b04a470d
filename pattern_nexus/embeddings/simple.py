"""
Hash embeddings for recommendation contexts - numpy only.

Feature hashing over the rendered context
("installed: a, b | frameworks: x | keywords: k | time: t | day: d").
Each value is hashed together with its field label, so "react" as a
framework and "react" as a keyword land in different buckets. Character
n-grams of each value add partial overlap between related names
("jest" / "jest-dom").

Not as good as a sentence model, but deterministic, offline and fast.
Identical text always yields the identical vector, which is what pattern
merging relies on.
"""

import hashlib
from typing import Dict, Iterator, List, Tuple

import numpy as np

# Relative weight of each context field
FIELD_WEIGHTS: Dict[str, float] = {
    "installed": 1.0,
    "frameworks": 2.0,
    "keywords": 1.5,
    "time": 0.5,
    "day": 0.5,
}

NGRAM_WEIGHT = 0.25


def _buckets(token: str, dimension: int, count: int) -> Iterator[Tuple[int, float]]:
    """(position, sign) pairs for a token. count <= 8."""
    digest = hashlib.blake2b(token.encode(), digest_size=8 * count).digest()
    for i in range(count):
        chunk = int.from_bytes(digest[i * 8:(i + 1) * 8], "little")
        yield chunk % dimension, (1.0 if chunk >> 63 else -1.0)


def split_fields(text: str) -> List[Tuple[str, List[str]]]:
    """Parse rendered context text into (label, values) pairs."""
    fields = []
    for segment in text.lower().split(" | "):
        label, sep, rest = segment.partition(": ")
        if not sep:
            label, rest = "text", segment
        values = [v.strip() for v in rest.split(",") if v.strip()]
        if values:
            fields.append((label.strip(), values))
    return fields


class SimpleEmbeddings:
    """
    Field-aware hashed embeddings - no ML dependencies required.

    Example:
        embeddings = SimpleEmbeddings(dimension=384)
        vector = embeddings.embed("frameworks: react | keywords: testing")
    """

    def __init__(
        self,
        dimension: int = 384,
        ngram_range: Tuple[int, int] = (3, 4),
        buckets_per_value: int = 3,
        **kwargs  # model_name etc. are meaningless here
    ):
        """
        Args:
            dimension: Output embedding dimension
            ngram_range: Character n-gram sizes hashed per value
            buckets_per_value: Positions each whole value is spread over
        """
        self.dimension = dimension
        self.ngram_range = ngram_range
        self.buckets_per_value = buckets_per_value

    def embed(self, text: str) -> List[float]:
        embedding = np.zeros(self.dimension)

        for label, values in split_fields(text or ""):
            weight = FIELD_WEIGHTS.get(label, 1.0)
            for value in values:
                for pos, sign in _buckets(f"{label}={value}", self.dimension, self.buckets_per_value):
                    embedding[pos] += sign * weight

                padded = f"<{value}>"
                for n in range(self.ngram_range[0], self.ngram_range[1] + 1):
                    for i in range(len(padded) - n + 1):
                        for pos, sign in _buckets(f"{label}#{padded[i:i + n]}", self.dimension, 1):
                            embedding[pos] += sign * weight * NGRAM_WEIGHT

        norm = np.linalg.norm(embedding)
        if norm > 0:
            embedding /= norm

        return embedding.tolist()
