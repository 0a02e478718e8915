"""Protocols for the collaborators the enrichment subsystem consumes.

``SQLiteGraphStore`` is the reference ``GraphStore``; the LLM and embedding
adapters live in ``codelore.llm`` and ``codelore.embeddings``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, Type, TypeVar

from pydantic import BaseModel

from .models import (
    ChunkCandidate,
    ChunkRecord,
    Enrichment,
    EnrichmentState,
    GrepMatch,
    NeighborChunk,
    PartialEnrichment,
    QueueItem,
    QueueStatus,
)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class LLMClient(Protocol):
    """Protocol for the language model service."""

    @property
    def model_name(self) -> str:
        ...

    async def chat(self, prompt: str) -> str:
        """Free-form completion for one research turn."""
        ...

    async def generate_structured(self, prompt: str, schema: Type[SchemaT]) -> SchemaT:
        """Completion validated against ``schema``.

        Raises:
            EnrichmentParseError: If the reply does not match the schema
        """
        ...


class EmbeddingService(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...


class TextSearchService(Protocol):
    """Literal/regex search over the indexed source tree."""

    async def search(
        self, pattern: str, *, limit: int, case_sensitive: bool = False
    ) -> List[GrepMatch]:
        ...


class GraphStore(Protocol):
    """Relational/graph store holding chunks, the queue and enrichments."""

    # Chunk lookup and traversal
    def get_chunk(self, chunk_id: str) -> Optional[ChunkRecord]:
        ...

    def get_file_hash(self, file_id: int) -> Optional[str]:
        ...

    def list_file_chunk_ids(self, file_id: int) -> List[str]:
        ...

    def get_callers(self, chunk_id: str, depth: int = 1) -> List[NeighborChunk]:
        ...

    def get_callees(self, chunk_id: str, depth: int = 1) -> List[NeighborChunk]:
        ...

    def get_file_siblings(self, chunk_id: str) -> List[NeighborChunk]:
        ...

    def find_chunk_at(self, path: str, line: int) -> Optional[NeighborChunk]:
        ...

    def similarity_search(
        self, vector: Sequence[float], limit: int
    ) -> List[Tuple[NeighborChunk, float]]:
        ...

    # Candidates
    def list_enrichment_candidates(
        self, limit: int, analysis_version: str
    ) -> List[ChunkCandidate]:
        ...

    def get_candidate(self, chunk_id: str) -> Optional[ChunkCandidate]:
        ...

    # Queue
    def queue_for_enrichment(self, chunk_id: str, file_id: int, priority: int) -> bool:
        ...

    def update_queue_item(
        self,
        item_id: int,
        status: QueueStatus,
        *,
        expected_status: Optional[QueueStatus] = None,
        attempts: Optional[int] = None,
        next_retry_at: Optional[datetime] = None,
        error_message: Optional[str] = None,
        processed_at: Optional[datetime] = None,
    ) -> QueueItem:
        ...

    def get_queue_batch(self, limit: int, now: Optional[datetime] = None) -> List[QueueItem]:
        ...

    def get_queue_item(self, item_id: int) -> Optional[QueueItem]:
        ...

    def list_queue_items(self, status: Optional[QueueStatus] = None) -> List[QueueItem]:
        ...

    def recover_processing_items(self) -> int:
        ...

    def queue_status_counts(self, max_retries: int) -> Dict[str, int]:
        ...

    # Enrichments
    def upsert_enrichment(self, enrichment: Enrichment) -> None:
        ...

    def get_enrichment(self, chunk_id: str) -> Optional[Enrichment]:
        ...

    def delete_enrichment_and_requeue(self, chunk_id: str, file_id: int, priority: int) -> None:
        ...

    def list_enrichment_validity(
        self, *, chunk_id: Optional[str] = None, file_id: Optional[int] = None
    ) -> List[EnrichmentState]:
        ...

    def add_partial_enrichment(self, partial: PartialEnrichment) -> None:
        ...

    def get_partial_enrichments(self, chunk_id: str) -> List[PartialEnrichment]:
        ...

    def upsert_enriched_embedding(self, chunk_id: str, vector: Sequence[float]) -> None:
        ...

    # Maintenance and aggregates
    def cleanup_orphans(self, completed_before: datetime) -> Dict[str, int]:
        ...

    def count_chunks(self) -> int:
        ...

    def count_enriched_chunks(self) -> int:
        ...

    def count_hub_chunks(self, centrality_threshold: float) -> int:
        ...

    def checkpoint(self) -> None:
        ...

    def integrity_errors(self) -> List[str]:
        ...
