"""Research, persist and re-embed one chunk.

Shared by the background queue runner and the on-demand enricher so both
paths stamp and store results the same way.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from .exceptions import ChunkNotFoundError
from .interfaces import EmbeddingService, GraphStore
from .models import Enrichment, ResearchOutput
from .representation import build_tier_aware_representation
from .research_agent import ResearchAgent

logger = logging.getLogger(__name__)


class EnrichmentPipeline:
    def __init__(
        self,
        store: GraphStore,
        agent: ResearchAgent,
        *,
        analysis_version: str,
        embedder: Optional[EmbeddingService] = None,
    ) -> None:
        self._store = store
        self._agent = agent
        self._analysis_version = analysis_version
        self._embedder = embedder

    @property
    def analysis_version(self) -> str:
        return self._analysis_version

    async def run(self, chunk_id: str) -> Tuple[Enrichment, ResearchOutput]:
        """Research ``chunk_id`` and persist the result.

        The enrichment is stamped with the file hash read before research
        started, so an edit made during research leaves it stale.

        Raises:
            ChunkNotFoundError: If the chunk doesn't exist
        """
        chunk = self._store.get_chunk(chunk_id)
        if chunk is None:
            raise ChunkNotFoundError(chunk_id)

        output = await self._agent.enrich(chunk_id)
        enrichment = await self._agent.store_results(
            output,
            file_id=chunk.file_id,
            content_hash=chunk.file_hash,
            analysis_version=self._analysis_version,
            model_used=self._agent.model_name,
        )
        await self.reembed(chunk_id, enrichment)
        return enrichment, output

    async def reembed(self, chunk_id: str, enrichment: Enrichment) -> bool:
        """Embed the full-tier representation; failures are logged, never raised."""
        if self._embedder is None:
            return False
        try:
            chunk = self._store.get_chunk(chunk_id)
            if chunk is None:
                return False
            text, tier = build_tier_aware_representation(chunk, enrichment)
            vector = await self._embedder.embed(text)
            self._store.upsert_enriched_embedding(chunk_id, vector)
        except Exception as exc:
            logger.warning(
                "Re-embedding failed",
                extra={"chunk_id": chunk_id, "error": str(exc)},
            )
            return False
        logger.debug(
            "Re-embedded chunk",
            extra={"chunk_id": chunk_id, "context_tier": tier.value},
        )
        return True
