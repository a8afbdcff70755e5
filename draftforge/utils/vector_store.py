"""Qdrant-backed passage index."""

import logging
from collections.abc import Sequence

from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchAny,
    MatchValue,
    Range,
    VectorParams,
)

from draftforge.constants import (
    EMBEDDING_DIMENSIONS,
    FULLTEXT_CHUNK_MIN_CHARS,
    QDRANT_COLLECTION_NAME,
)
from draftforge.schemas import PassageHit
from draftforge.utils.embedder import Embedder

logger = logging.getLogger(__name__)


class VectorStoreError(Exception):
    pass


class QdrantPassageIndex:
    """Points carry payload {"source_id", "content", "char_count"}."""

    def __init__(
        self,
        client: AsyncQdrantClient,
        embedder: Embedder,
        collection_name: str = QDRANT_COLLECTION_NAME,
        vector_size: int = EMBEDDING_DIMENSIONS,
    ) -> None:
        self.client = client
        self.embedder = embedder
        self.collection_name = collection_name
        self.vector_size = vector_size

    async def ensure_collection_exists(self) -> None:
        try:
            collections = await self.client.get_collections()
            if self.collection_name not in {c.name for c in collections.collections}:
                await self.client.create_collection(
                    collection_name=self.collection_name,
                    vectors_config=VectorParams(size=self.vector_size, distance=Distance.COSINE),
                )
                logger.info("Created Qdrant collection: %s", self.collection_name)
        except Exception as e:
            logger.error("Failed to ensure collection exists: %s", e)
            raise VectorStoreError(f"Collection creation failed: {e}") from e

    async def query(
        self,
        text: str,
        source_ids: Sequence[str] | None = None,
        min_score: float | None = None,
        limit: int = 20,
    ) -> list[PassageHit]:
        query_vector = await self.embedder.embed_text(text)
        query_filter = None
        if source_ids:
            query_filter = Filter(
                must=[FieldCondition(key="source_id", match=MatchAny(any=list(source_ids)))]
            )

        try:
            response = await self.client.query_points(
                collection_name=self.collection_name,
                query=query_vector,
                limit=limit,
                score_threshold=min_score,
                query_filter=query_filter,
            )
        except Exception as e:
            logger.error("Search failed: %s", e)
            raise VectorStoreError(f"Search failed: {e}") from e

        hits = [
            PassageHit(
                source_id=str(point.payload.get("source_id", "")),
                content=str(point.payload.get("content", "")),
                score=point.score,
            )
            for point in response.points
            if point.payload
        ]
        logger.debug(
            "Search completed: %d results (threshold=%.2f)", len(hits), min_score or 0.0
        )
        return hits

    async def count_chunks(self, source_id: str) -> int:
        """Number of indexed full-text chunks for one source."""
        try:
            result = await self.client.count(
                collection_name=self.collection_name,
                count_filter=Filter(
                    must=[
                        FieldCondition(key="source_id", match=MatchValue(value=source_id)),
                        FieldCondition(
                            key="char_count",
                            range=Range(gte=FULLTEXT_CHUNK_MIN_CHARS),
                        ),
                    ]
                ),
                exact=True,
            )
        except Exception as e:
            raise VectorStoreError(f"Count failed for {source_id}: {e}") from e
        return result.count
