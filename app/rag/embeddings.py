# app/rag/embeddings.py
from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

import numpy as np
from sentence_transformers import SentenceTransformer

from app.config import get_settings


class EmbeddingClient:
    """
    Thin wrapper around a sentence-transformers model.
    Vectors are L2-normalised, so cosine distance is meaningful.
    """

    def __init__(self, model_name: Optional[str] = None):
        settings = get_settings()
        self.model = SentenceTransformer(model_name or settings.embedding_model)
        self.dim = settings.embedding_dim

    def embed(self, texts: List[str]) -> np.ndarray:
        """
        Returns a numpy array of shape (len(texts), dim).
        """
        if not texts:
            return np.zeros((0, self.dim), dtype=np.float32)

        embeddings = self.model.encode(texts, convert_to_numpy=True, normalize_embeddings=True)
        if embeddings.shape[1] != self.dim:
            raise ValueError(
                f"Embedding dimension mismatch: expected {self.dim}, got {embeddings.shape[1]}"
            )
        return embeddings.astype(np.float32)

    def embed_query(self, text: str) -> np.ndarray:
        """
        Single vector of shape (dim,) for a search query.
        """
        return self.embed([text])[0]


@lru_cache(maxsize=1)
def get_embedding_client() -> EmbeddingClient:
    return EmbeddingClient()
