"""Query embeddings with a Redis cache.

Passage-index queries repeat heavily across sections and jobs (the same topic
is embedded for every section), so vectors are cached by text+model hash.
"""

import hashlib
import json
import logging

from openai import APIConnectionError, APITimeoutError, AsyncOpenAI, RateLimitError
from redis.asyncio import Redis
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from draftforge.constants import (
    EMBEDDING_BATCH_SIZE,
    EMBEDDING_CACHE_TTL,
    EMBEDDING_MAX_RETRIES,
    EMBEDDING_MODEL,
)

logger = logging.getLogger(__name__)


class EmbeddingError(Exception):
    """Raised when embedding generation fails."""


class Embedder:
    def __init__(
        self,
        redis_client: Redis,
        client: AsyncOpenAI | None = None,
        model: str = EMBEDDING_MODEL,
        cache_ttl: int = EMBEDDING_CACHE_TTL,
    ):
        """
        Args:
            redis_client: Redis client for caching
            client: OpenAI client (built from env vars if None)
            model: Embedding model name
            cache_ttl: Cache entry lifetime in seconds
        """
        self.redis_client = redis_client
        self.client = client or AsyncOpenAI()
        self.model = model
        self.cache_ttl = cache_ttl

    async def embed_text(self, text: str) -> list[float]:
        embeddings = await self.embed_batch([text])
        return embeddings[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in input order, serving cache hits from Redis.

        Raises:
            EmbeddingError: If the embedding API fails after retries
        """
        if not texts:
            return []

        cache_keys = [self.cache_key(text) for text in texts]
        vectors = await self._get_cached(cache_keys)
        missing = [i for i, vector in enumerate(vectors) if vector is None]

        logger.debug(
            "Embedding cache: hits=%d, misses=%d", len(texts) - len(missing), len(missing)
        )

        if missing:
            fresh: list[list[float]] = []
            for start in range(0, len(missing), EMBEDDING_BATCH_SIZE):
                batch = [texts[i] for i in missing[start : start + EMBEDDING_BATCH_SIZE]]
                fresh.extend(await self._call_embedding_api(batch))
            await self._store([cache_keys[i] for i in missing], fresh)
            for i, vector in zip(missing, fresh):
                vectors[i] = vector

        return vectors  # type: ignore[return-value]

    def cache_key(self, text: str) -> str:
        digest = hashlib.sha256(f"{self.model}:{text}".encode()).hexdigest()
        return f"embedding:cache:{self.model}:{digest[:16]}"

    async def _get_cached(self, cache_keys: list[str]) -> list[list[float] | None]:
        try:
            pipe = self.redis_client.pipeline()
            for key in cache_keys:
                pipe.get(key)
            results = await pipe.execute()
        except Exception as e:
            logger.warning("Failed to read embedding cache: %s", e)
            return [None] * len(cache_keys)
        return [json.loads(raw) if raw else None for raw in results]

    async def _store(self, cache_keys: list[str], vectors: list[list[float]]) -> None:
        try:
            pipe = self.redis_client.pipeline()
            for key, vector in zip(cache_keys, vectors):
                pipe.setex(key, self.cache_ttl, json.dumps(vector))
            await pipe.execute()
        except Exception as e:
            # Cache writes are best-effort
            logger.warning("Failed to write embedding cache: %s", e)

    @retry(
        wait=wait_exponential(multiplier=1, min=2, max=10),
        stop=stop_after_attempt(EMBEDDING_MAX_RETRIES),
        retry=retry_if_exception_type((RateLimitError, APIConnectionError, APITimeoutError)),
        reraise=True,
    )
    async def _call_embedding_api(self, texts: list[str]) -> list[list[float]]:
        try:
            response = await self.client.embeddings.create(model=self.model, input=texts)
        except (RateLimitError, APIConnectionError, APITimeoutError):
            raise
        except Exception as e:
            logger.error("Embedding API failed: %s", e)
            raise EmbeddingError(f"Failed to generate embeddings: {e}") from e
        return [item.embedding for item in response.data]
