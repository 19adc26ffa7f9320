"""OpenAI embeddings with validation, timeouts and bounded retry."""

import asyncio
import time
from dataclasses import dataclass, field

from openai import (
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    OpenAI,
    RateLimitError,
)

from dream_rag.core.config import Settings, get_settings
from dream_rag.core.exceptions import EmbeddingFailure
from dream_rag.core.lexical import sparse_term_weights
from dream_rag.core.logging import get_logger, query_fingerprint

logger = get_logger(__name__)

RETRYABLE_ERRORS = (APIConnectionError, APITimeoutError, InternalServerError, RateLimitError)


@dataclass
class FullEmbedding:
    """Dense vector plus an optional sparse term-weight map."""

    dense: list[float]
    sparse: dict[str, float] = field(default_factory=dict)


def _get_client() -> OpenAI:
    """Get OpenAI client instance with an explicit timeout and no client-side retries."""
    settings = get_settings()
    return OpenAI(
        api_key=settings.OPENAI_API_KEY,
        timeout=settings.EMBEDDING_TIMEOUT_SECONDS,
        max_retries=0,
    )


class OpenAIEmbeddingAdapter:
    """
    Embedding adapter backed by the OpenAI embeddings API.

    Every request is retried on transient errors (connection, timeout, 5xx,
    rate limit) up to ``EMBEDDING_MAX_ATTEMPTS`` times with exponential backoff
    starting at ``EMBEDDING_BACKOFF_SECONDS``. Exhaustion, a non-transient API
    error, or a vector of the wrong dimension raises ``EmbeddingFailure``.
    """

    def __init__(self, settings: Settings | None = None, client: OpenAI | None = None):
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = _get_client()
        return self._client

    @property
    def dimension(self) -> int:
        return self.settings.EMBEDDING_DIM

    def _create(self, texts: list[str]) -> list[list[float]]:
        max_attempts = self.settings.EMBEDDING_MAX_ATTEMPTS
        fingerprint = query_fingerprint("\n".join(texts))

        for attempt in range(max_attempts):
            try:
                response = self.client.embeddings.create(
                    model=self.settings.EMBEDDING_MODEL,
                    input=texts,
                )
                break
            except RETRYABLE_ERRORS as e:
                if attempt < max_attempts - 1:
                    delay = self.settings.EMBEDDING_BACKOFF_SECONDS * (2**attempt)
                    logger.warning(
                        f"Embedding attempt {attempt + 1} failed: {e}. Retry in {delay}s",
                        extra={"extra_data": {"fingerprint": fingerprint}},
                    )
                    time.sleep(delay)
                else:
                    logger.error(f"All {max_attempts} embedding attempts failed: {e}")
                    raise EmbeddingFailure(
                        f"Embedding failed after {max_attempts} attempts: {e}",
                        fingerprint=fingerprint,
                        count=len(texts),
                    ) from e
            except Exception as e:
                logger.error(f"Failed to generate embeddings: {e}")
                raise EmbeddingFailure(
                    f"Embedding request rejected: {e}", fingerprint=fingerprint, count=len(texts)
                ) from e

        embeddings = []
        for i, embedding_obj in enumerate(response.data):
            embedding = list(embedding_obj.embedding)
            if len(embedding) != self.dimension:
                raise EmbeddingFailure(
                    f"Embedding dimension mismatch for text {i}: "
                    f"expected {self.dimension}, got {len(embedding)}",
                    fingerprint=fingerprint,
                )
            embeddings.append(embedding)

        if len(embeddings) != len(texts):
            raise EmbeddingFailure(
                f"Expected {len(texts)} embeddings, got {len(embeddings)}",
                fingerprint=fingerprint,
            )
        return embeddings

    def embed_many(self, texts: list[str]) -> list[list[float]]:
        """
        Embed texts in batches of ``EMBEDDING_BATCH_SIZE``.

        Args:
            texts: Texts to embed

        Returns:
            One vector per text, in input order

        Raises:
            EmbeddingFailure: If any batch fails after retries
        """
        if not texts:
            return []

        batch_size = self.settings.EMBEDDING_BATCH_SIZE
        vectors: list[list[float]] = []
        for start in range(0, len(texts), batch_size):
            vectors.extend(self._create(texts[start : start + batch_size]))

        logger.info(
            f"Generated {len(vectors)} embeddings using {self.settings.EMBEDDING_MODEL}",
            extra={"extra_data": {"model": self.settings.EMBEDDING_MODEL, "count": len(vectors)}},
        )
        return vectors

    def embed(self, text: str) -> list[float]:
        return self.embed_many([text])[0]

    def embed_full(self, text: str) -> FullEmbedding:
        """Dense vector plus the sparse term weights used for hybrid scoring."""
        return FullEmbedding(dense=self.embed(text), sparse=sparse_term_weights(text))

    async def aembed(self, text: str) -> list[float]:
        return await asyncio.to_thread(self.embed, text)


def embed_texts(texts: list[str]) -> list[list[float]]:
    """Embed texts with the default adapter."""
    return OpenAIEmbeddingAdapter().embed_many(texts)
