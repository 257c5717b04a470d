"""
Embedding providers for Pattern Nexus.

Providers:
- "simple": Field-aware hashed embeddings (numpy only), deterministic
- "local": Sentence-transformers (better quality, requires torch)

A provider is anything with embed(text) -> List[float] and a dimension
attribute; PatternEncoder also accepts a plain callable.
"""

from .encoder import PatternEncoder, compute_gradient, context_to_text
from .simple import SimpleEmbeddings

__all__ = [
    "SimpleEmbeddings",
    "PatternEncoder",
    "compute_gradient",
    "context_to_text",
    "create_embeddings",
]


def create_embeddings(provider: str = "simple", **kwargs):
    """
    Build an embedding provider by name.

    Args:
        provider: "simple" (default) or "local"
        **kwargs: dimension, model_name, ... (providers ignore what they
            do not use)

    Raises:
        ValueError: Unknown provider
        ImportError: "local" without the sentence-transformers extra
    """
    if provider == "simple":
        return SimpleEmbeddings(**kwargs)
    if provider == "local":
        from .local import LocalEmbeddings
        return LocalEmbeddings(**kwargs)
    raise ValueError(f"Unknown embedding provider: {provider!r} (expected 'simple' or 'local')")
