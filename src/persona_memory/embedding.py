"""Embedding collaborators for the memory engine.

The engine only depends on the :class:`Embedder` protocol. Two
implementations ship with the package:

- :class:`EmbeddingService` wraps sentence-transformers and lazy-loads the
  model on first use to avoid startup overhead.
- :class:`HashingEmbedder` is a deterministic feature-hashing embedder with no
  model download, used offline and in tests.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
from typing import TYPE_CHECKING, Protocol, Sequence, runtime_checkable

import numpy as np
from loguru import logger

from .config import EmbeddingConfig
from .exceptions import EmbeddingFailure
from .models import QuantizedVector
from .quantizer import quantize

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer


@runtime_checkable
class Embedder(Protocol):
    """Black-box text embedder: text -> fixed-length float vector."""

    @property
    def dimension(self) -> int: ...

    def embed(self, text: str) -> Sequence[float]: ...


class EmbeddingService:
    """Embedding service using sentence-transformers.

    Features:
    - Lazy model loading (only when first embedding is requested)
    - Batch encoding for efficiency
    """

    def __init__(self, config: EmbeddingConfig | None = None):
        """Initialize embedding service.

        Args:
            config: Embedding configuration
        """
        self._config = config or EmbeddingConfig()
        self._model: SentenceTransformer | None = None
        self._dimension = self._config.dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def _ensure_model(self) -> None:
        """Lazy-load the sentence-transformers model."""
        if self._model is not None:
            return

        from sentence_transformers import SentenceTransformer

        logger.info(f"Loading embedding model: {self._config.model}")
        self._model = SentenceTransformer(
            self._config.model,
            trust_remote_code=self._config.trust_remote_code,
        )
        # Update dimension from actual model
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.info(f"Embedding model loaded: dim={self._dimension}")

    def encode(self, texts: list[str]) -> list[list[float]]:
        """Encode texts into normalized embedding vectors.

        Args:
            texts: List of text strings to encode

        Returns:
            List of embedding vectors (each a list of floats)
        """
        if not texts:
            return []

        self._ensure_model()

        embeddings: np.ndarray = self._model.encode(
            texts,
            batch_size=32,
            show_progress_bar=False,
            normalize_embeddings=True,
        )
        return embeddings.tolist()

    def embed(self, text: str) -> list[float]:
        results = self.encode([text])
        return results[0] if results else []


_TOKEN = re.compile(r"[^\W_]+")


class HashingEmbedder:
    """Deterministic bag-of-words embedder based on feature hashing.

    Each token (and each adjacent token pair) is hashed to a signed bucket.
    Texts sharing vocabulary end up with high cosine similarity, which is
    enough for offline use and reproducible tests.
    """

    def __init__(self, dimension: int = 256):
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def _bucket(self, feature: str) -> tuple[int, float]:
        digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
        value = int.from_bytes(digest, "little")
        sign = 1.0 if value & 1 else -1.0
        return (value >> 1) % self._dimension, sign

    def embed(self, text: str) -> list[float]:
        tokens = _TOKEN.findall(text.casefold())
        vector = np.zeros(self._dimension, dtype=np.float32)
        features = tokens + [f"{a} {b}" for a, b in zip(tokens, tokens[1:])]
        for feature in features:
            index, sign = self._bucket(feature)
            vector[index] += sign

        norm = float(np.linalg.norm(vector))
        if norm == 0.0:
            # Empty text still needs a non-zero, deterministic vector
            index, sign = self._bucket("\x00empty")
            vector[index] = sign
            norm = 1.0
        return (vector / norm).tolist()


async def embed_quantized(embedder: Embedder, text: str) -> QuantizedVector:
    """Embed ``text`` off the event loop and quantize the result.

    Raises:
        EmbeddingFailure: If the embedder raised or returned a vector of the
            wrong shape or with non-finite values.
    """
    try:
        raw = await asyncio.to_thread(embedder.embed, text)
    except Exception as e:
        raise EmbeddingFailure(f"Embedder raised: {e}", text=text) from e

    vector = np.asarray(raw, dtype=np.float32)
    expected = embedder.dimension
    if vector.ndim != 1 or vector.size != expected:
        raise EmbeddingFailure(
            f"Embedder returned shape {vector.shape}, expected ({expected},)",
            text=text,
        )
    if not np.all(np.isfinite(vector)):
        raise EmbeddingFailure("Embedder returned non-finite values", text=text)
    return quantize(vector)


def create_embedder(config: EmbeddingConfig | None = None) -> Embedder:
    """Build the embedder named by ``config.provider``."""
    config = config or EmbeddingConfig()
    if config.provider == "hashing":
        return HashingEmbedder(dimension=config.dimension)
    if config.provider == "local":
        return EmbeddingService(config=config)
    raise ValueError(f"Unknown embedding provider: {config.provider!r}")
