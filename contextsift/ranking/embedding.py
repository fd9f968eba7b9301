"""Dense vector embeddings of queries and file content."""

import logging
from typing import Any

import numpy as np

from ..bus import EventBus
from .runtime import Loader, ModelService

logger = logging.getLogger(__name__)


def _load_sentence_transformer(model_id: str, device: str | None) -> Any:
    from sentence_transformers import SentenceTransformer

    return SentenceTransformer(model_id, device=device)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity rescaled from [-1, 1] to [0, 1].

    Raises ValueError if either vector has non-finite components.
    """
    a = np.asarray(a, dtype=np.float32).ravel()
    b = np.asarray(b, dtype=np.float32).ravel()
    if not (np.isfinite(a).all() and np.isfinite(b).all()):
        raise ValueError("Embedding vector has non-finite components")
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0 or a.shape != b.shape:
        return 0.0
    cos = float(np.dot(a, b)) / norm
    if not np.isfinite(cos):
        raise ValueError("Cosine similarity is not finite")
    return min(max((cos + 1.0) / 2.0, 0.0), 1.0)


class EmbeddingProvider(ModelService):
    """Embed text with a sentence-transformers model.

    Content longer than `chunk_size` characters is split into at most
    `max_chunks` chunks whose vectors are mean-pooled.
    """

    kind = "embedding"

    def __init__(
        self,
        model_id: str = "sentence-transformers/all-MiniLM-L6-v2",
        device: str = "auto",
        chunk_size: int = 2000,
        max_chunks: int = 8,
        loader: Loader | None = None,
        bus: EventBus | None = None,
    ):
        super().__init__(model_id, device, loader=loader, bus=bus)
        self.chunk_size = chunk_size
        self.max_chunks = max_chunks

    default_loader = staticmethod(_load_sentence_transformer)

    def chunk(self, text: str) -> list[str]:
        if len(text) <= self.chunk_size:
            return [text]
        chunks = [
            text[i : i + self.chunk_size] for i in range(0, len(text), self.chunk_size)
        ]
        return chunks[: self.max_chunks]

    @staticmethod
    def _encode(model: Any, texts: list[str]) -> np.ndarray:
        vectors = np.asarray(model.encode(texts), dtype=np.float32)
        return np.atleast_2d(vectors)

    async def embed(self, text: str) -> np.ndarray:
        chunks = self.chunk(text)
        vectors = await self._invoke(self._encode, chunks)
        if not np.isfinite(vectors).all():
            raise ValueError(f"{self.model_id} returned a non-finite embedding")
        if len(vectors) > 1:
            return vectors.mean(axis=0).astype(np.float32)
        return vectors[0]

    async def embed_document(self, path: str, content: str) -> np.ndarray:
        # empty files are represented by their path
        if not content.strip():
            logger.debug(f"Embedding path of empty file {path}")
            return await self.embed(path)
        return await self.embed(content)
