"""Synchronous enrichment that bypasses the background queue."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Optional

from .cache import EnrichmentCacheManager
from .config import EnrichmentQueueConfig
from .exceptions import FeatureDisabledError
from .interfaces import GraphStore
from .models import Enrichment, EnrichResult
from .pipeline import EnrichmentPipeline

logger = logging.getLogger(__name__)


class OnDemandEnricher:
    """Enrich chunks immediately for a caller that is waiting on the result.

    A valid cached enrichment is returned without calling the model unless
    ``force`` is set. Otherwise the chunk goes through the same pipeline
    the background runner uses. No lock is shared with the runner; if both
    paths enrich the same chunk the later write wins.
    """

    def __init__(
        self,
        store: GraphStore,
        pipeline: Optional[EnrichmentPipeline],
        cache: EnrichmentCacheManager,
        config: Optional[EnrichmentQueueConfig] = None,
    ) -> None:
        self._store = store
        self._pipeline = pipeline
        self._cache = cache
        self._config = config or EnrichmentQueueConfig()

    @property
    def enabled(self) -> bool:
        return (
            self._pipeline is not None
            and self._config.enabled
            and self._config.on_demand
        )

    async def enrich_chunk(self, chunk_id: str, *, force: bool = False) -> Enrichment:
        """Return a current enrichment for ``chunk_id``.

        Raises:
            FeatureDisabledError: If on-demand enrichment is disabled
            ChunkNotFoundError: If the chunk doesn't exist
            EnrichmentError: If research or parsing fails
        """
        if not self.enabled:
            raise FeatureDisabledError("On-demand enrichment is disabled")

        if not force and self._cache.is_valid(chunk_id):
            cached = self._store.get_enrichment(chunk_id)
            if cached is not None:
                logger.debug("Using cached enrichment", extra={"chunk_id": chunk_id})
                return cached

        enrichment, output = await self._pipeline.run(chunk_id)
        logger.info(
            "Enriched chunk on demand",
            extra={
                "chunk_id": chunk_id,
                "tool_call_count": output.tool_call_count,
                "stop_reason": output.stop_reason.value,
                "forced": force,
            },
        )
        return enrichment

    async def enrich_chunks(
        self, chunk_ids: Iterable[str], *, force: bool = False
    ) -> List[EnrichResult]:
        """Enrich chunks one at a time; a failure is reported, never raised."""
        if not self.enabled:
            return []

        results: List[EnrichResult] = []
        for index, chunk_id in enumerate(chunk_ids):
            if index > 0 and self._config.on_demand_item_delay_seconds > 0:
                await asyncio.sleep(self._config.on_demand_item_delay_seconds)
            try:
                enrichment = await self.enrich_chunk(chunk_id, force=force)
            except Exception as exc:
                logger.error(
                    "On-demand enrichment failed",
                    extra={"chunk_id": chunk_id, "error": str(exc)},
                )
                results.append(
                    EnrichResult(chunk_id=chunk_id, success=False, error=str(exc) or type(exc).__name__)
                )
            else:
                results.append(
                    EnrichResult(chunk_id=chunk_id, success=True, enrichment=enrichment)
                )
        return results

    async def enrich_file(self, file_id: int, *, force: bool = False) -> List[EnrichResult]:
        if not self.enabled:
            return []
        return await self.enrich_chunks(self._store.list_file_chunk_ids(file_id), force=force)
