"""
Sentence-transformers embeddings for recommendation contexts.

Runs offline once the model is cached. Vectors are L2-normalized, so the
cosine similarity of two contexts is their dot product.
"""

import logging
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "all-MiniLM-L6-v2"


class LocalEmbeddings:
    """
    Context encoder backed by a local sentence-transformers model.

    The store's dimensions must match the model: all-MiniLM-L6-v2 (the
    default) gives 384, all-mpnet-base-v2 gives 768. PatternEncoder
    rejects a mismatch at startup.
    """

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        device: Optional[str] = None,
        **kwargs  # dimension is read from the model
    ):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise ImportError(
                "Local embeddings require: pip install 'pattern-nexus[local]'\n"
                "This will also install torch."
            ) from e

        self.model_name = model_name
        self.model = SentenceTransformer(model_name, device=device)
        self.dimension = self.model.get_sentence_embedding_dimension()

        logger.info(f"Loaded local embedding model: {model_name} (dim={self.dimension})")

    def embed(self, text: str) -> List[float]:
        vector = self.model.encode(text, convert_to_numpy=True, normalize_embeddings=True)
        return vector.tolist()
