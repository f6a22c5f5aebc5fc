"""
Embedding providers for the memory service.

OllamaEmbedder   - real embeddings from a local Ollama server
HashingEmbedder  - deterministic character n-gram hashing (offline, tests, fallback backend)

Both return L2-normalized float32 vectors so cosine similarity is a dot product.
Calls are blocking; the memory service runs them in a worker thread.
"""

import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np
import ollama

from kindred.errors import EmbeddingError

logger = logging.getLogger(__name__)


def _normalize(vec: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        return vec
    return vec / norm


class Embedder(ABC):
    """Text -> unit vector."""

    @abstractmethod
    def embed(self, text: str) -> np.ndarray:
        """
        Raises:
            EmbeddingError: backend unavailable or returned nothing usable
        """
        pass


class OllamaEmbedder(Embedder):
    def __init__(self, model: str = "nomic-embed-text", host: Optional[str] = None, client=None):
        self.model = model
        self._client = client or ollama.Client(host=host)

    def embed(self, text: str) -> np.ndarray:
        try:
            response = self._client.embed(model=self.model, input=text)
        except Exception as e:
            raise EmbeddingError(f"embedding request failed: {e}") from e

        vectors = response["embeddings"] if response is not None else None
        if not vectors or not vectors[0]:
            raise EmbeddingError("embedding response was empty")
        return _normalize(np.asarray(vectors[0], dtype=np.float32))


class HashingEmbedder(Embedder):
    """
    Bag of character bigrams and trigrams hashed into a fixed number of buckets.

    Crude but stable across processes, and good enough to rank
    "I adopted a cat" above "the weather is cold" for a query about cats.
    """

    def __init__(self, dimensions: int = 256):
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self.dimensions = dimensions

    def _bucket(self, gram: str) -> int:
        digest = hashlib.md5(gram.encode("utf-8")).digest()
        return int.from_bytes(digest[:4], "little") % self.dimensions

    def embed(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dimensions, dtype=np.float32)
        cleaned = "".join(text.lower().split())
        if not cleaned:
            return vec
        for n in (2, 3):
            for i in range(max(1, len(cleaned) - n + 1)):
                vec[self._bucket(cleaned[i:i + n])] += 1.0
        return _normalize(vec)


def build_embedder(config) -> Embedder:
    """Pick a backend from the `embedding` config section."""
    backend = config.get("embedding.backend", "ollama")
    if backend == "hashing":
        return HashingEmbedder(dimensions=int(config.get("embedding.dimensions", 256)))
    if backend == "ollama":
        return OllamaEmbedder(
            model=config.get("embedding.model", "nomic-embed-text"),
            host=config.get("llm.host"),
        )
    raise ValueError(f"unknown embedding backend: {backend}")
