"""
Embedding providers: turn free text into fixed-length, L2-normalized vectors.

Two providers share one interface:
- OpenAIEmbeddingProvider: trained text-embedding-3-small model (1536 dims),
  batched API calls, lazy client.
- HashedEmbeddingProvider: deterministic hashed bag-of-words fallback for
  offline/degraded operation.

Every provider exposes an `identity` string that is stored with each vector.
Cosine similarity is only meaningful between vectors from the same identity,
so clustering refuses to mix them.
"""

import hashlib
import logging
import os
import re
from typing import List, Optional

import numpy as np
from openai import OpenAI

logger = logging.getLogger(__name__)

# Model configuration
EMBEDDING_MODEL = "text-embedding-3-small"
EMBEDDING_DIMENSIONS = 1536

# Batch size for OpenAI API calls
DEFAULT_BATCH_SIZE = 50

# ~4 chars per token, 8000 tokens
MAX_TEXT_CHARS = 32000

# Hashed bag-of-words configuration
HASHED_EMBEDDING_DIMENSIONS = 256
HASHED_EMBEDDING_VERSION = "v1"
MIN_TOKEN_LENGTH = 3  # tokens of 2 chars or fewer are discarded
PRIMARY_TOKEN_WEIGHT = 1.0
REVERSED_TOKEN_WEIGHT = 0.5

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+")


class EmbeddingServiceError(Exception):
    """Raised when the embedding provider cannot produce vectors."""
    pass


class EmbeddingProvider:
    """Base interface for text embedding providers."""

    identity: str = "unknown"
    dimensions: int = 0

    def embed_text(self, text: str) -> List[float]:
        return self.embed_texts([text])[0]

    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        raise NotImplementedError


def _stable_hash(token: str, person: bytes) -> int:
    """Process-independent 64-bit hash (Python's hash() is salted per process)."""
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8, person=person).digest()
    return int.from_bytes(digest, "big")


def tokenize(text: str) -> List[str]:
    """Lowercase alphanumeric tokens longer than two characters."""
    if not text:
        return []
    return [t for t in _TOKEN_PATTERN.findall(text.lower()) if len(t) >= MIN_TOKEN_LENGTH]


class HashedEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic hashed bag-of-words embedding.

    Each token adds PRIMARY_TOKEN_WEIGHT at hash(token) % dim and
    REVERSED_TOKEN_WEIGHT at hash2(reversed token) % dim, using two
    independently keyed hash functions. The accumulator is L2-normalized;
    text with no usable tokens yields the zero vector.
    """

    def __init__(self, dimensions: int = HASHED_EMBEDDING_DIMENSIONS):
        if dimensions < 1:
            raise ValueError(f"dimensions must be positive, got {dimensions}")
        self.dimensions = dimensions
        self.identity = f"hashed-bow-{HASHED_EMBEDDING_VERSION}:{dimensions}"

    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        return [self._embed(text) for text in texts]

    def _embed(self, text: str) -> List[float]:
        accumulator = np.zeros(self.dimensions, dtype=np.float64)

        for token in tokenize(text):
            accumulator[_stable_hash(token, b"sig-primary") % self.dimensions] += PRIMARY_TOKEN_WEIGHT
            accumulator[_stable_hash(token[::-1], b"sig-reverse") % self.dimensions] += REVERSED_TOKEN_WEIGHT

        norm = np.linalg.norm(accumulator)
        if norm == 0.0:
            return accumulator.tolist()
        return (accumulator / norm).tolist()


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    Trained embedding model via the OpenAI API.

    Any API failure raises EmbeddingServiceError for the whole request;
    callers switch the entire run to the hashed provider rather than mixing.
    """

    def __init__(
        self,
        model: str = EMBEDDING_MODEL,
        dimensions: int = EMBEDDING_DIMENSIONS,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.identity = f"openai:{model}:{dimensions}"
        self._client: Optional[OpenAI] = None

    @property
    def client(self) -> OpenAI:
        """Lazy-initialize the OpenAI client."""
        if self._client is None:
            self._client = OpenAI()
        return self._client

    def _prepare_text(self, text: str) -> str:
        text = (text or "").strip()
        if len(text) > MAX_TEXT_CHARS:
            text = text[:MAX_TEXT_CHARS]
        # The API rejects empty input; a single space embeds to a neutral vector
        return text or " "

    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []

        prepared = [self._prepare_text(t) for t in texts]
        embeddings: List[List[float]] = []

        for i in range(0, len(prepared), self.batch_size):
            batch = prepared[i : i + self.batch_size]

            logger.info(
                f"Generating embeddings for batch {i // self.batch_size + 1}/"
                f"{(len(prepared) - 1) // self.batch_size + 1} ({len(batch)} signals)"
            )

            try:
                response = self.client.embeddings.create(model=self.model, input=batch)
            except Exception as e:
                raise EmbeddingServiceError(f"OpenAI embedding request failed: {e}") from e

            batch_embeddings = [data.embedding for data in response.data]
            if len(batch_embeddings) != len(batch):
                raise EmbeddingServiceError(
                    f"Expected {len(batch)} embeddings, got {len(batch_embeddings)}"
                )
            for embedding in batch_embeddings:
                if len(embedding) != self.dimensions:
                    raise EmbeddingServiceError(
                        f"Embedding must be {self.dimensions} dimensions, got {len(embedding)}"
                    )
            embeddings.extend(_l2_normalize(e) for e in batch_embeddings)

        return embeddings


def _l2_normalize(vector: List[float]) -> List[float]:
    arr = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(arr)
    if norm == 0.0:
        return arr.tolist()
    return (arr / norm).tolist()


def get_embedding_provider(name: Optional[str] = None) -> EmbeddingProvider:
    """
    Build the configured embedding provider.

    Reads EMBEDDING_PROVIDER ("openai" or "hashed"). When unset, uses OpenAI
    if OPENAI_API_KEY is present, otherwise the hashed fallback.
    """
    name = (name or os.getenv("EMBEDDING_PROVIDER") or "").strip().lower()
    if not name:
        name = "openai" if os.getenv("OPENAI_API_KEY") else "hashed"

    if name == "openai":
        return OpenAIEmbeddingProvider(model=os.getenv("EMBEDDING_MODEL", EMBEDDING_MODEL))
    if name == "hashed":
        dimensions = int(os.getenv("HASHED_EMBEDDING_DIMENSIONS", HASHED_EMBEDDING_DIMENSIONS))
        return HashedEmbeddingProvider(dimensions=dimensions)

    raise ValueError(f"Unknown embedding provider: {name!r} (expected 'openai' or 'hashed')")
