"""Collaborator contracts consumed by the generation core.

Concrete backends (Qdrant passage index, OpenAI language model, YAML profile
service) live in their own packages. Tests substitute AsyncMocks.
"""

from collections.abc import Sequence
from typing import Any, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel

from draftforge.schemas import (
    PassageHit,
    Reference,
    SearchFilters,
    SectionSpec,
    SourceDocument,
    StructuralProfile,
)

T = TypeVar("T", bound=BaseModel)

Messages = list[dict[str, Any]]


class CorpusStore(Protocol):
    async def get(self, ids: Sequence[str]) -> list[SourceDocument]: ...

    async def search(self, topic: str, filters: SearchFilters) -> list[SourceDocument]: ...


class DiscoveryBackend(Protocol):
    async def discover(self, topic: str, filters: SearchFilters) -> list[SourceDocument]: ...


class IngestBackend(Protocol):
    async def ingest(self, source: SourceDocument) -> str:
        """Persist a discovered source, returning its id in the corpus store."""
        ...


class PassageIndex(Protocol):
    async def query(
        self,
        text: str,
        source_ids: Sequence[str] | None = None,
        min_score: float | None = None,
        limit: int = 20,
    ) -> list[PassageHit]: ...


@runtime_checkable
class ChunkCounter(Protocol):
    async def count_chunks(self, source_id: str) -> int: ...


class JobQueue(Protocol):
    async def enqueue(self, source_id: str, url: str, priority: str) -> None: ...


class LanguageModel(Protocol):
    async def generate_text(
        self,
        messages: Messages,
        task_type: str | None = None,
        max_tokens: int | None = None,
    ) -> str: ...

    async def generate_structured(
        self,
        messages: Messages,
        response_model: type[T],
        task_type: str | None = None,
    ) -> T: ...


class StructuralProfileService(Protocol):
    async def get_profile(self, document_type: str) -> StructuralProfile: ...


class OutlineProvider(Protocol):
    async def outline(
        self,
        topic: str,
        corpus: Sequence[SourceDocument],
        profile: StructuralProfile,
    ) -> list[SectionSpec]: ...


class ReferenceLookup(Protocol):
    async def references(self, source_id: str) -> list[Reference]: ...
