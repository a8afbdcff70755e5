import logging
from dataclasses import dataclass
from enum import StrEnum

from draftforge.constants import (
    INGEST_AUTO_THRESHOLD,
    INGEST_COST_PER_SOURCE_USD,
    INGEST_MAX_COST_USD,
)
from draftforge.interfaces import CorpusStore
from draftforge.schemas import SearchFilters, SourceDocument

logger = logging.getLogger(__name__)


class IngestPolicy(StrEnum):
    AUTO = "auto"
    CONFIRM = "confirm"


@dataclass(frozen=True)
class IngestEstimate:
    source_count: int
    cost_usd: float
    exceeds_budget: bool


def decide_ingest_policy(source_count: int, threshold: int = INGEST_AUTO_THRESHOLD) -> IngestPolicy:
    return IngestPolicy.AUTO if source_count < threshold else IngestPolicy.CONFIRM


def estimate_ingest_cost(source_count: int) -> IngestEstimate:
    cost = round(source_count * INGEST_COST_PER_SOURCE_USD, 6)
    return IngestEstimate(source_count, cost, cost > INGEST_MAX_COST_USD)


class CorpusSearchDiscovery:
    """Discovery backend that delegates to the corpus store's search."""

    def __init__(self, store: CorpusStore) -> None:
        self.store = store

    async def discover(self, topic: str, filters: SearchFilters) -> list[SourceDocument]:
        results = await self.store.search(topic, filters)
        excluded = set(filters.exclude_ids)
        return [
            doc
            for doc in results
            if doc.id not in excluded
            and (filters.from_year is None or doc.year is None or doc.year >= filters.from_year)
        ][: filters.limit]
